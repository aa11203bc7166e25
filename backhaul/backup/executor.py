"""
Backup executor - runs one attempt of a backup job.

Workflow:
1. Claim the run's pending BackupHistory entries (status: running)
2. Start the heartbeat thread
3. Decrypt the source config and resolve credentials
4. Produce the artifact once in a per-run working directory
   (s3 sources instead copy straight to each destination)
5. Deliver to every destination concurrently, recording each entry as it finishes
6. Remove the working directory
"""

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from flask import current_app

from backhaul import db
from backhaul.models import BackupJob, BackupHistory
from .credentials import resolve_destination_config, resolve_source_config
from .destinations import DeliveryOutcome, DeliveryTarget, DestinationDistributor
from .errors import BackupError, ConfigurationError, is_retryable
from .execution_log import ExecutionLog
from .sources import BackupSource, create_source
from .tracker import (
    Heartbeat, aggregate_status, complete_entry, fail_entries, fail_entry,
    get_run_entries, mark_running
)

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION_NAME = 'Default storage'


@dataclass
class RunOutcome:
    """Summary of one finished run, passed to notifiers and the retry logic."""
    run_id: str
    job_id: Optional[int]
    job_name: Optional[str]
    job_type: Optional[str]
    status: str
    attempt: int = 1
    max_attempts: int = 1
    trigger: Optional[str] = None
    duration_seconds: float = 0
    destinations: List[Dict] = field(default_factory=list)
    errors: List[BaseException] = field(default_factory=list)
    next_run_id: Optional[str] = None

    @property
    def retryable(self) -> bool:
        """Only failed runs with an attempt-level error are worth retrying."""
        return self.status == 'failed' and any(is_retryable(error) for error in self.errors)

    @property
    def total_size(self) -> int:
        return sum(d['file_size'] or 0 for d in self.destinations if d['status'] == 'completed')


class BackupExecutor:
    """
    Executes the pending entries of one run.
    """

    def __init__(self, run_id: str, distributor: Optional[DestinationDistributor] = None):
        self.run_id = run_id
        self.app = current_app._get_current_object()
        self.distributor = distributor or DestinationDistributor(
            self.app.config.get('DESTINATION_CONCURRENCY', 4)
        )
        self.work_dir = os.path.join(self.app.config['TEMP_BACKUP_DIR'], run_id)
        self.log = ExecutionLog(logger)
        self.errors: List[BaseException] = []
        self._entries: Dict[int, BackupHistory] = {}

    def execute(self) -> Optional[RunOutcome]:
        """
        Execute the run.

        Returns:
            RunOutcome, or None if the run no longer exists
        """
        started = time.monotonic()
        entries = get_run_entries(self.run_id)
        if not entries:
            logger.warning(f"Run {self.run_id} not found - job may have been deleted")
            return None

        self._entries = {entry.id: entry for entry in entries}
        pending = [entry for entry in entries if entry.status == 'pending']
        job = db.session.get(BackupJob, entries[0].backup_job_id) if entries[0].backup_job_id else None

        if not pending:
            logger.warning(f"Run {self.run_id} has no pending entries, skipping")
            return self._outcome(job, entries, started)

        if job is None:
            error = ConfigurationError(f"Backup job {entries[0].backup_job_id} not found - may have been deleted")
            self._fail_all(pending, error)
            return self._outcome(job, entries, started)

        trigger = (pending[0].run_metadata or {}).get('trigger')
        if trigger == 'scheduled' and not job.enabled:
            self._fail_all(pending, ConfigurationError("Backup job is disabled"))
            return self._outcome(job, entries, started)

        logger.info(f"Starting backup job: {job.name} (ID: {job.id}, Run: {self.run_id})")
        mark_running(pending)

        interval = self.app.config.get('HEARTBEAT_INTERVAL_SECONDS', 30)
        with Heartbeat(self.app, [entry.id for entry in pending], interval):
            try:
                self._execute_workflow(job, pending)
            except BackupError as e:
                self._fail_all(pending, e)
            except Exception as e:
                logger.exception(f"Unexpected error in run {self.run_id}")
                self._fail_all(pending, e)
            finally:
                self._cleanup()

        outcome = self._outcome(job, entries, started)
        logger.info(f"Backup job {job.name} run {self.run_id} finished: {outcome.status}")
        return outcome

    def _execute_workflow(self, job: BackupJob, entries: List[BackupHistory]):
        config = resolve_source_config(job)
        source = create_source(job.type, config, self.app.config)

        os.makedirs(self.work_dir, exist_ok=True)

        if not source.produces_artifact:
            self._execute_sync(source, entries)
            return

        artifact = source.backup(self.work_dir)
        logger.info(f"Artifact ready: {os.path.basename(artifact.file_path)} ({artifact.file_size} bytes)")

        targets = self._resolve_targets(entries)
        self.distributor.distribute(artifact, targets, on_outcome=self._record)

    def _execute_sync(self, source: BackupSource, entries: List[BackupHistory]):
        """S3 sources copy directly to each destination, once per destination."""
        if any(entry.destination_id is None for entry in entries):
            raise ConfigurationError("S3 backup requires at least one destination to be configured")

        targets = self._resolve_targets(entries)

        def sync(target: DeliveryTarget) -> DeliveryOutcome:
            log = ExecutionLog(logger)
            scratch_dir = os.path.join(self.work_dir, str(target.entry_id))
            try:
                result = source.sync(target.type, target.config, scratch_dir, log)
            except BackupError as e:
                return DeliveryOutcome(target=target, execution_log=e.execution_log or str(log), error=e)
            return DeliveryOutcome(
                target=target,
                file_path=result.file_path,
                file_size=result.file_size,
                metadata=result.metadata,
                execution_log=result.execution_log,
            )

        self.distributor.run_each(targets, sync, on_outcome=self._record)

    def _resolve_targets(self, entries: List[BackupHistory]) -> List[DeliveryTarget]:
        """
        Resolve each entry's destination config.

        A destination that cannot be resolved fails its own entry only.
        """
        targets = []
        for entry in entries:
            if entry.destination_id is None:
                targets.append(DeliveryTarget(
                    entry_id=entry.id,
                    destination_id=None,
                    name=DEFAULT_DESTINATION_NAME,
                    type='local',
                    config={'path': self.app.config['BACKUP_DIR']},
                ))
                continue

            destination = entry.destination
            try:
                if destination is None:
                    raise ConfigurationError(f"Destination {entry.destination_id} not found")
                config = resolve_destination_config(destination)
            except BackupError as e:
                logger.error(f"Destination {entry.destination_id} of run {self.run_id}: {e}")
                self.errors.append(e)
                fail_entry(entry, str(e), e.execution_log)
                continue

            targets.append(DeliveryTarget(
                entry_id=entry.id,
                destination_id=destination.id,
                name=destination.name,
                type=destination.type,
                config=config,
            ))
        return targets

    def _record(self, outcome: DeliveryOutcome):
        entry = self._entries[outcome.target.entry_id]
        if outcome.succeeded:
            complete_entry(entry, outcome.file_size, outcome.file_path, outcome.metadata, outcome.execution_log)
            logger.info(f"Destination {outcome.target.name} completed: {outcome.file_path}")
        else:
            self.errors.append(outcome.error)
            fail_entry(entry, str(outcome.error), outcome.execution_log or outcome.error.execution_log)
            logger.error(f"Destination {outcome.target.name} failed: {outcome.error}")

    def _fail_all(self, entries: List[BackupHistory], error: BaseException):
        self.errors.append(error)
        execution_log = getattr(error, 'execution_log', None) or str(self.log) or None
        fail_entries(entries, str(error), execution_log)
        logger.error(f"Run {self.run_id} failed: {error}")

    def _cleanup(self):
        """Remove the run's working directory, including the shared artifact."""
        if os.path.exists(self.work_dir):
            try:
                shutil.rmtree(self.work_dir)
            except OSError as e:
                logger.warning(f"Failed to cleanup working directory {self.work_dir}: {e}")

    def _outcome(self, job: Optional[BackupJob], entries: List[BackupHistory], started: float) -> RunOutcome:
        metadata = entries[0].run_metadata or {}
        return RunOutcome(
            run_id=self.run_id,
            job_id=job.id if job else entries[0].backup_job_id,
            job_name=job.name if job else None,
            job_type=job.type if job else None,
            status=aggregate_status(entry.status for entry in entries),
            attempt=metadata.get('attempt', 1),
            max_attempts=metadata.get('max_attempts', 1),
            trigger=metadata.get('trigger'),
            duration_seconds=round(time.monotonic() - started, 2),
            destinations=[{
                'destination_id': entry.destination_id,
                'name': _destination_name(entry),
                'status': entry.status,
                'file_size': entry.file_size,
                'file_path': entry.file_path,
                'error': entry.error_message,
            } for entry in entries],
            errors=list(self.errors),
        )


def _destination_name(entry: BackupHistory) -> Optional[str]:
    if entry.destination is not None:
        return entry.destination.name
    return DEFAULT_DESTINATION_NAME if entry.destination_id is None else None


def execute_run(run_id: str) -> Optional[RunOutcome]:
    """Execute a run by ID within the current app context."""
    return BackupExecutor(run_id).execute()
