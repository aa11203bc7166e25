"""
Backup job queue.

``enqueue`` records a run's pending entries and hands the run to the
scheduler's ``backups`` executor, whose thread pool bounds how many runs
execute at once. Failed attempts are retried as new runs with exponential
backoff, within the job's attempt budget.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from apscheduler.triggers.date import DateTrigger
from flask import current_app

from backhaul import db
from backhaul.models import BackupJob
from .executor import RunOutcome, execute_run
from .tracker import create_run, fail_entries, get_run_entries

logger = logging.getLogger(__name__)

BACKUP_EXECUTOR = 'backups'

# Called with (job, outcome) after every run
_notifiers: List[Callable] = []


def register_notifier(notifier: Callable):
    """Register a callable invoked with (job, outcome) after each run."""
    _notifiers.append(notifier)


def clear_notifiers():
    _notifiers.clear()


def max_attempts_for(job: BackupJob) -> int:
    """retry_count is the total attempt budget, at least one."""
    return max(1, job.retry_count or 1)


def retry_delay(attempt: int, base_seconds: float) -> float:
    """Backoff before the attempt after ``attempt``: base, 2x base, 4x base, ..."""
    return base_seconds * 2 ** (attempt - 1)


def _get_app():
    from backhaul import scheduler as scheduler_module
    return scheduler_module.flask_app or current_app._get_current_object()


def _dispatch(run_id: str, job_name: str, delay_seconds: float = 0):
    """Hand a run to the worker pool."""
    from backhaul import scheduler as scheduler_module

    if scheduler_module.scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduler_module.scheduler.add_job(
        func=process_run,
        args=[run_id],
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)),
        id=f"run_{run_id}",
        name=f"Run: {job_name}",
        executor=BACKUP_EXECUTOR,
        misfire_grace_time=None,
        replace_existing=False
    )


def enqueue(job: BackupJob, trigger: str = 'manual', attempt: int = 1,
            previous_run_id: Optional[str] = None, delay_seconds: float = 0) -> str:
    """
    Queue a run of a job.

    Manual and scheduled runs of the same job are independent runs.

    Args:
        job: BackupJob to run
        trigger: 'manual', 'scheduled' or 'retry'
        attempt: Attempt number within the job's attempt budget
        previous_run_id: Run this attempt retries
        delay_seconds: Delay before the run may start

    Returns:
        run_id of the new run
    """
    destinations = [destination for destination in job.destinations if destination.enabled]
    run_id = create_run(
        job, destinations,
        attempt=attempt,
        max_attempts=max_attempts_for(job),
        previous_run_id=previous_run_id,
        trigger=trigger
    )
    try:
        _dispatch(run_id, job.name, delay_seconds)
    except Exception as e:
        fail_entries(get_run_entries(run_id), f"Failed to queue run: {e}")
        raise
    logger.info(f"Queued backup job {job.name} (run {run_id}, attempt {attempt}, trigger {trigger})")
    return run_id


def process_run(run_id: str) -> Optional[RunOutcome]:
    """
    Worker entry point: execute a run, schedule a retry if warranted, and
    notify.
    """
    app = _get_app()

    with app.app_context():
        try:
            outcome = execute_run(run_id)
        except Exception:
            logger.exception(f"Run {run_id} crashed")
            db.session.rollback()
            return None

        if outcome is None:
            return None

        if outcome.retryable and outcome.attempt < outcome.max_attempts:
            outcome.next_run_id = _schedule_retry(outcome)

        _notify(outcome)
        return outcome


def _schedule_retry(outcome: RunOutcome) -> Optional[str]:
    job = db.session.get(BackupJob, outcome.job_id)
    if job is None:
        return None

    delay = retry_delay(outcome.attempt, current_app.config.get('RETRY_BACKOFF_SECONDS', 5))
    logger.info(
        f"Retrying backup job {job.name} in {delay}s "
        f"(attempt {outcome.attempt + 1}/{outcome.max_attempts})"
    )
    return enqueue(
        job,
        trigger=outcome.trigger or 'manual',
        attempt=outcome.attempt + 1,
        previous_run_id=outcome.run_id,
        delay_seconds=delay
    )


def _notify(outcome: RunOutcome):
    if not _notifiers:
        return

    job = db.session.get(BackupJob, outcome.job_id) if outcome.job_id else None
    for notifier in list(_notifiers):
        try:
            notifier(job, outcome)
        except Exception:
            logger.exception(f"Notifier {getattr(notifier, '__name__', notifier)} failed for run {outcome.run_id}")
