"""
Execution tracking for backup runs.

A run is one execution attempt of a job, identified by ``run_id`` and made
of one BackupHistory entry per destination. Entries move
pending -> running -> completed | failed. While an entry runs, a heartbeat
thread keeps ``heartbeat_at`` fresh; entries whose heartbeat goes stale are
failed by ``cleanup_stale_running_jobs`` after a crash or restart.
"""

import logging
import threading
import uuid
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import and_, func, or_

from backhaul import db
from backhaul.models import BackupHistory, utcnow

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = 'Job interrupted (server restart or crash)'

TERMINAL_STATUSES = ('completed', 'failed')


def aggregate_status(statuses: Iterable[str]) -> Optional[str]:
    """
    Derive a run's status from its entries' statuses.

    - any entry running -> running
    - all entries failed -> failed
    - some entries failed -> partial
    - otherwise -> completed (pending entries count as not failed)
    """
    statuses = list(statuses)
    if not statuses:
        return None
    if 'running' in statuses:
        return 'running'
    failed = statuses.count('failed')
    if failed == len(statuses):
        return 'failed'
    if failed:
        return 'partial'
    if 'pending' in statuses:
        return 'pending'
    return 'completed'


def create_run(job, destinations, attempt: int = 1, max_attempts: Optional[int] = None,
               previous_run_id: Optional[str] = None, trigger: str = 'manual') -> str:
    """
    Create the pending entries of a new run in one transaction.

    A job without destinations gets a single entry with no destination,
    which stands for the default local backup directory.

    Returns:
        The new run_id
    """
    run_id = str(uuid.uuid4())
    now = utcnow()
    metadata = {
        'attempt': attempt,
        'max_attempts': max_attempts or attempt,
        'previous_run_id': previous_run_id,
        'trigger': trigger,
    }

    destination_ids = [destination.id for destination in destinations] or [None]

    try:
        for destination_id in destination_ids:
            db.session.add(BackupHistory(
                backup_job_id=job.id,
                destination_id=destination_id,
                run_id=run_id,
                status='pending',
                started_at=now,
                heartbeat_at=now,
                run_metadata=dict(metadata),
            ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Created run {run_id} for job {job.id} with {len(destination_ids)} entries (attempt {attempt})")
    return run_id


def get_run_entries(run_id: str) -> List[BackupHistory]:
    return (BackupHistory.query
            .filter_by(run_id=run_id)
            .order_by(BackupHistory.id)
            .all())


def mark_running(entries: List[BackupHistory]):
    """Claim pending entries for a worker."""
    now = utcnow()
    for entry in entries:
        entry.status = 'running'
        entry.started_at = now
        entry.heartbeat_at = now
    db.session.commit()


def complete_entry(entry: BackupHistory, file_size: Optional[int], file_path: Optional[str],
                   metadata: Optional[Dict] = None, execution_log: Optional[str] = None):
    entry.status = 'completed'
    entry.completed_at = utcnow()
    entry.file_size = file_size
    entry.file_path = file_path
    entry.execution_log = execution_log
    entry.run_metadata = {**(entry.run_metadata or {}), **(metadata or {})}
    db.session.commit()


def fail_entry(entry: BackupHistory, error_message: str, execution_log: Optional[str] = None,
               metadata: Optional[Dict] = None):
    entry.status = 'failed'
    entry.completed_at = utcnow()
    entry.error_message = error_message
    if execution_log is not None:
        entry.execution_log = execution_log
    if metadata:
        entry.run_metadata = {**(entry.run_metadata or {}), **metadata}
    db.session.commit()


def fail_entries(entries: List[BackupHistory], error_message: str, execution_log: Optional[str] = None,
                 metadata: Optional[Dict] = None):
    """Fail every entry of a run that hasn't finished yet."""
    for entry in entries:
        if entry.status not in TERMINAL_STATUSES:
            fail_entry(entry, error_message, execution_log, metadata)


def record_heartbeat(entry_ids: List[int]) -> int:
    """
    Refresh heartbeat_at on running entries.

    Returns:
        Number of entries updated
    """
    now = utcnow()
    updated = (BackupHistory.query
               .filter(BackupHistory.id.in_(entry_ids))
               .filter(BackupHistory.status == 'running')
               .filter(or_(BackupHistory.heartbeat_at.is_(None), BackupHistory.heartbeat_at <= now))
               .update({BackupHistory.heartbeat_at: now}, synchronize_session=False))
    db.session.commit()
    return updated


class Heartbeat:
    """
    Background thread that records heartbeats for a set of entries.

    Usage:
        with Heartbeat(app, entry_ids, interval=30):
            ... do the work ...
    """

    def __init__(self, app, entry_ids: List[int], interval: float):
        self.app = app
        self.entry_ids = list(entry_ids)
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def _beat(self):
        while not self._stop.wait(self.interval):
            with self.app.app_context():
                try:
                    record_heartbeat(self.entry_ids)
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Failed to update heartbeat: {e}")

    def start(self):
        self._thread = threading.Thread(target=self._beat, name='backup-heartbeat', daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False


def cleanup_stale_running_jobs(threshold_seconds: Optional[int] = None, include_pending: bool = False) -> int:
    """
    Fail entries orphaned by a crash or restart.

    Running entries whose heartbeat is missing or older than the threshold
    are failed with the interruption message. Fresh entries are left alone.
    At startup ``include_pending`` also fails every pending entry: the
    in-memory queue that would have run it died with the previous process.

    Returns:
        Number of entries failed
    """
    if threshold_seconds is None:
        threshold_seconds = current_app.config.get('STALE_RUN_THRESHOLD_SECONDS', 120)

    now = utcnow()
    cutoff = now - timedelta(seconds=threshold_seconds)
    orphaned = and_(
        BackupHistory.status == 'running',
        or_(BackupHistory.heartbeat_at.is_(None), BackupHistory.heartbeat_at < cutoff),
    )
    if include_pending:
        orphaned = or_(orphaned, BackupHistory.status == 'pending')

    count = (BackupHistory.query
             .filter(orphaned)
             .update({
                 BackupHistory.status: 'failed',
                 BackupHistory.error_message: INTERRUPTED_MESSAGE,
                 BackupHistory.completed_at: now,
             }, synchronize_session=False))
    db.session.commit()

    if count:
        logger.warning(f"Marked {count} stale backup entries as failed")
    return count


def _entry_to_dict(entry: BackupHistory) -> Dict:
    return {
        'id': entry.id,
        'destination_id': entry.destination_id,
        'destination_name': entry.destination.name if entry.destination else None,
        'status': entry.status,
        'started_at': entry.started_at.isoformat() if entry.started_at else None,
        'completed_at': entry.completed_at.isoformat() if entry.completed_at else None,
        'file_size': entry.file_size,
        'file_path': entry.file_path,
        'error_message': entry.error_message,
    }


def get_run_status(run_id: str) -> Optional[Dict]:
    """
    Aggregate view of a run.

    Returns:
        Dict with status, counts, total size and per-destination rows,
        or None if the run doesn't exist
    """
    entries = get_run_entries(run_id)
    if not entries:
        return None

    statuses = [entry.status for entry in entries]
    finished = [entry.completed_at for entry in entries if entry.completed_at]

    return {
        'run_id': run_id,
        'job_id': entries[0].backup_job_id,
        'status': aggregate_status(statuses),
        'attempt': (entries[0].run_metadata or {}).get('attempt', 1),
        'total': len(entries),
        'completed': statuses.count('completed'),
        'failed': statuses.count('failed'),
        'running': statuses.count('running'),
        'pending': statuses.count('pending'),
        'total_size': sum(entry.file_size or 0 for entry in entries if entry.status == 'completed'),
        'started_at': min(entry.started_at for entry in entries).isoformat(),
        'completed_at': max(finished).isoformat() if len(finished) == len(entries) else None,
        'destinations': [_entry_to_dict(entry) for entry in entries],
    }


def get_job_stats(job_id: int) -> Dict:
    """Entry counts, last run/success and average duration for a job."""
    base = BackupHistory.query.filter(BackupHistory.backup_job_id == job_id)

    total_runs = base.count()
    successful_runs = base.filter(BackupHistory.status == 'completed').count()
    failed_runs = base.filter(BackupHistory.status == 'failed').count()

    last_run = db.session.query(func.max(BackupHistory.started_at)).filter(
        BackupHistory.backup_job_id == job_id
    ).scalar()
    last_success = db.session.query(func.max(BackupHistory.completed_at)).filter(
        BackupHistory.backup_job_id == job_id,
        BackupHistory.status == 'completed'
    ).scalar()

    durations = [
        (completed_at - started_at).total_seconds()
        for started_at, completed_at in db.session.query(
            BackupHistory.started_at, BackupHistory.completed_at
        ).filter(
            BackupHistory.backup_job_id == job_id,
            BackupHistory.status == 'completed',
            BackupHistory.completed_at.isnot(None)
        )
    ]

    return {
        'total_runs': total_runs,
        'successful_runs': successful_runs,
        'failed_runs': failed_runs,
        'last_run': last_run.isoformat() if last_run else None,
        'last_success': last_success.isoformat() if last_success else None,
        'avg_duration_seconds': round(sum(durations) / len(durations), 2) if durations else None,
    }


def get_recent_runs(job_id: int, limit: int = 10) -> List[Dict]:
    """Most recent runs of a job, newest first."""
    rows = (db.session.query(BackupHistory.run_id, func.max(BackupHistory.started_at).label('started'))
            .filter(BackupHistory.backup_job_id == job_id)
            .group_by(BackupHistory.run_id)
            .order_by(func.max(BackupHistory.started_at).desc(), func.max(BackupHistory.id).desc())
            .limit(limit)
            .all())
    return [get_run_status(row.run_id) for row in rows]
