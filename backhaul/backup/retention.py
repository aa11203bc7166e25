"""
Retention policy enforcement for backups.

Removes artifacts older than a job's retention_days from its local and s3
destinations (and from the default backup directory for jobs without
destinations). Artifacts are recognised by the job's artifact name stem
followed directly by an artifact timestamp.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from flask import current_app

from backhaul import db
from backhaul.models import BackupJob, BackupHistory
from .compression import is_artifact_name
from .credentials import decrypt_config, resolve_destination_config
from .errors import BackupError
from .execution_log import ExecutionLog
from .sources import create_source
from .storage import LocalStorage, S3Storage

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for backup jobs.
    """

    def __init__(self):
        self.log = ExecutionLog(logger)

    def enforce_all_policies(self) -> Dict[str, Any]:
        """
        Enforce retention policies for all backup jobs.

        Returns:
            Dict with summary of cleanup operations:
            {
                'jobs_processed': int,
                's3_deleted': int,
                'local_deleted': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self.log.log("Starting retention policy enforcement for all jobs")

        summary = {
            'jobs_processed': 0,
            's3_deleted': 0,
            'local_deleted': 0,
            'errors': []
        }

        for job in BackupJob.query.all():
            try:
                result = self.enforce_job_policy(job)
                summary['jobs_processed'] += 1
                summary['s3_deleted'] += result['s3_deleted']
                summary['local_deleted'] += result['local_deleted']
            except BackupError as e:
                error_msg = f"Failed to enforce policy for job {job.name}: {e}"
                self.log.error(error_msg)
                summary['errors'].append(error_msg)

        self.log.log(
            f"Retention enforcement complete. "
            f"Jobs: {summary['jobs_processed']}, "
            f"S3 deleted: {summary['s3_deleted']}, "
            f"Local deleted: {summary['local_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.log.lines
        return summary

    def enforce_job_policy(self, job: BackupJob) -> Dict[str, int]:
        """
        Enforce retention policy for a specific job.

        Returns:
            Dict with counts: {'s3_deleted': int, 'local_deleted': int}

        Raises:
            ConfigurationError: If the job's config can't identify its artifacts
        """
        result = {'s3_deleted': 0, 'local_deleted': 0}

        if not job.retention_days:
            self.log.log(f"Retention not configured for job {job.name}, skipping")
            return result

        source = create_source(job.type, decrypt_config(job.type, job.config or {}), current_app.config)
        stem = source.artifact_stem()
        self.log.log(f"Enforcing {job.retention_days} day retention for job {job.name} (artifacts: {stem}*)")

        if not job.destinations:
            result['local_deleted'] += self._cleanup_local(job, current_app.config['BACKUP_DIR'], stem)

        for destination in job.destinations:
            if destination.type == 'local':
                result['local_deleted'] += self._cleanup_local(job, (destination.config or {}).get('path'), stem)
            elif destination.type == 's3':
                if not source.produces_artifact:
                    # S3-to-S3 copies are timestamped folders, not named artifacts
                    continue
                result['s3_deleted'] += self._cleanup_s3(job, destination, stem)

        return result

    def _cleanup_s3(self, job: BackupJob, destination, stem: str) -> int:
        """
        Delete objects under the destination prefix named stem + timestamp.

        Returns:
            Number of objects deleted
        """
        try:
            config = resolve_destination_config(destination)
            storage = S3Storage(config['credentials'], config['bucket'], config.get('prefix'))
            objects = storage.list_objects(prefix=storage.key_for(stem))
        except BackupError as e:
            self.log.error(f"Failed to list S3 objects for {destination.name}: {e}")
            return 0

        cutoff_date = datetime.now(timezone.utc) - timedelta(days=job.retention_days)

        deleted_count = 0
        for obj in objects:
            if not is_artifact_name(obj['Key'].rsplit('/', 1)[-1], stem):
                continue
            last_modified = obj['LastModified']
            if last_modified.tzinfo is None:
                last_modified = last_modified.replace(tzinfo=timezone.utc)
            if last_modified >= cutoff_date:
                continue

            try:
                storage.delete(obj['Key'])
            except BackupError as e:
                self.log.error(f"Failed to delete S3 object {obj['Key']}: {e}")
                continue

            deleted_count += 1
            self.log.log(f"Deleted S3 object: {obj['Key']}")
            self._forget_artifact(job, storage.uri_for(obj['Key']))

        return deleted_count

    def _cleanup_local(self, job: BackupJob, path: str, stem: str) -> int:
        """
        Delete files and copy folders in ``path`` named stem + timestamp.

        Returns:
            Number of entries deleted
        """
        if not path:
            return 0

        local_storage = LocalStorage(path)
        try:
            files = local_storage.list_files(stem)
        except BackupError as e:
            self.log.error(f"Failed to list local files in {path}: {e}")
            return 0

        cutoff_date = datetime.now() - timedelta(days=job.retention_days)

        deleted_count = 0
        for file_info in files:
            if not is_artifact_name(file_info['path'], stem):
                continue
            if file_info['modified'] >= cutoff_date:
                continue

            try:
                local_storage.delete(file_info['path'])
            except BackupError as e:
                self.log.error(f"Failed to delete local file {file_info['path']}: {e}")
                continue

            deleted_count += 1
            self.log.log(f"Deleted local file: {file_info['path']}")
            self._forget_artifact(job, os.path.join(path, file_info['path']))

        return deleted_count

    def _forget_artifact(self, job: BackupJob, file_path: str):
        """Clear file_path on history entries whose artifact was deleted."""
        BackupHistory.query.filter_by(backup_job_id=job.id, file_path=file_path).update(
            {BackupHistory.file_path: None}, synchronize_session=False
        )
        db.session.commit()


def enforce_retention_policies() -> Dict[str, Any]:
    """
    Enforce retention policies for all jobs.

    Called by the scheduler daily.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager()
    return manager.enforce_all_policies()
