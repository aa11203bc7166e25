"""
APScheduler configuration and job scheduling for Backhaul.

Manages:
- Scheduled backup jobs (based on cron expressions)
- The worker pool that executes queued runs
- Periodic stale-run recovery
- Daily retention policy enforcement
"""

import logging

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from backhaul import db
from backhaul.models import BackupJob
from backhaul.backup.queue import BACKUP_EXECUTOR, enqueue
from backhaul.backup.retention import enforce_retention_policies
from backhaul.backup.tracker import cleanup_stale_running_jobs

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

BACKUP_JOB_PREFIX = 'backup_'


def _registration_id(backup_job_id: int) -> str:
    return f"{BACKUP_JOB_PREFIX}{backup_job_id}"


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Registrations are kept in memory: they are rebuilt from the database by
    sync_backup_jobs() on every start.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        # Cron triggers and maintenance
        'default': ThreadPoolExecutor(max_workers=3),
        # Backup runs; the pool size bounds concurrent runs
        BACKUP_EXECUTOR: ThreadPoolExecutor(max_workers=app.config.get('WORKER_CONCURRENCY', 2)),
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # One enqueue per registration at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    # Retention policy job (runs daily at 2 AM)
    scheduler.add_job(
        func=_run_in_app_context,
        args=[enforce_retention_policies],
        trigger=CronTrigger(hour=2, minute=0, timezone=timezone),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    # Fail running entries whose worker died
    scheduler.add_job(
        func=_run_in_app_context,
        args=[cleanup_stale_running_jobs],
        trigger=IntervalTrigger(seconds=app.config.get('STALE_SWEEP_INTERVAL_SECONDS', 120)),
        id='stale_run_cleanup',
        name='Stale Run Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler, letting running backups finish."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("APScheduler stopped")


def _run_in_app_context(func, *args):
    with flask_app.app_context():
        try:
            return func(*args)
        except Exception:
            logger.exception(f"Scheduled task {func.__name__} failed")
            db.session.rollback()


def _scheduled_backup(backup_job_id: int):
    """Cron trigger callback: queue a scheduled run of the job."""
    with flask_app.app_context():
        backup_job = db.session.get(BackupJob, backup_job_id)
        if backup_job is None:
            logger.warning(f"Scheduled backup job {backup_job_id} no longer exists, unscheduling")
            unschedule_backup_job(backup_job_id)
            return

        try:
            enqueue(backup_job, trigger='scheduled')
        except Exception:
            logger.exception(f"Failed to queue scheduled run of {backup_job.name}")


def schedule_backup_job(backup_job: BackupJob) -> bool:
    """
    Register (or replace) the cron registration of a job.

    Disabled or unscheduled jobs are unregistered instead.

    Returns:
        True if the job is now registered
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if not backup_job.enabled or not backup_job.schedule:
        unschedule_backup_job(backup_job.id)
        return False

    try:
        trigger = CronTrigger.from_crontab(backup_job.schedule, timezone=scheduler.timezone)
    except ValueError as e:
        logger.error(f"Invalid schedule for backup job {backup_job.name}: {e}")
        unschedule_backup_job(backup_job.id)
        return False

    # replace_existing swaps the registration in one step
    scheduler.add_job(
        func=_scheduled_backup,
        args=[backup_job.id],
        trigger=trigger,
        id=_registration_id(backup_job.id),
        name=f"Backup: {backup_job.name}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job: {backup_job.name} ({backup_job.schedule})")
    return True


def unschedule_backup_job(backup_job_id: int) -> bool:
    """
    Remove a job's cron registration.

    Returns:
        True if a registration was removed
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    try:
        scheduler.remove_job(_registration_id(backup_job_id))
    except JobLookupError:
        return False

    logger.info(f"Removed scheduled backup job ID: {backup_job_id}")
    return True


def update_job_schedule(backup_job_id: int) -> bool:
    """
    React to a job being created, updated, toggled or deleted.

    Returns:
        True if the job is registered afterwards
    """
    backup_job = db.session.get(BackupJob, backup_job_id)
    if backup_job is None:
        unschedule_backup_job(backup_job_id)
        return False
    return schedule_backup_job(backup_job)


def sync_backup_jobs():
    """
    Synchronize backup job registrations with the database.

    Called on startup and whenever registrations may have drifted.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    registered = {job.id for job in scheduler.get_jobs() if job.id.startswith(BACKUP_JOB_PREFIX)}

    for backup_job in BackupJob.query.all():
        if schedule_backup_job(backup_job):
            registered.discard(_registration_id(backup_job.id))

    # Registrations of deleted or disabled jobs
    for leftover_id in registered:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            pass


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
