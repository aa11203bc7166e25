"""
Unit tests for execution tracking (backhaul/backup/tracker.py).

Tests run creation, status aggregation, heartbeats and crash recovery.
"""

import time
from datetime import timedelta

import pytest

from backhaul.backup.tracker import (
    INTERRUPTED_MESSAGE,
    Heartbeat,
    aggregate_status,
    cleanup_stale_running_jobs,
    complete_entry,
    create_run,
    fail_entries,
    fail_entry,
    get_job_stats,
    get_recent_runs,
    get_run_entries,
    get_run_status,
    mark_running,
    record_heartbeat,
)
from backhaul.models import BackupHistory, utcnow


class TestAggregateStatus:
    """Test deriving a run's status from its entries."""

    @pytest.mark.parametrize('statuses,expected', [
        (['completed', 'completed'], 'completed'),
        (['failed', 'failed'], 'failed'),
        (['completed', 'failed'], 'partial'),
        (['running', 'failed'], 'running'),
        (['running', 'completed'], 'running'),
        (['pending', 'pending'], 'pending'),
        (['pending', 'completed'], 'pending'),
        (['pending', 'failed'], 'partial'),
        (['completed'], 'completed'),
        (['failed'], 'failed'),
        ([], None),
    ])
    def test_aggregate_status(self, statuses, expected):
        assert aggregate_status(statuses) == expected


class TestCreateRun:
    """Test creating the entries of a run."""

    def test_one_entry_per_destination(self, make_job, make_destination):
        destinations = [make_destination(name=f'Disk {i}', config={'path': f'/tmp/{i}'}) for i in range(3)]
        job = make_job(destinations=destinations)

        run_id = create_run(job, destinations, attempt=1, max_attempts=3, trigger='scheduled')

        entries = get_run_entries(run_id)
        assert len(entries) == 3
        assert [entry.destination_id for entry in entries] == [d.id for d in destinations]
        assert all(entry.status == 'pending' for entry in entries)
        assert all(entry.heartbeat_at is not None for entry in entries)
        assert entries[0].run_metadata == {
            'attempt': 1, 'max_attempts': 3, 'previous_run_id': None, 'trigger': 'scheduled'
        }

    def test_job_without_destinations_gets_default_entry(self, make_job):
        job = make_job()

        run_id = create_run(job, [])

        [entry] = get_run_entries(run_id)
        assert entry.destination_id is None
        assert entry.backup_job_id == job.id

    def test_run_ids_are_unique(self, make_job):
        job = make_job()

        assert create_run(job, []) != create_run(job, [])


class TestEntryTransitions:
    """Test entry status transitions."""

    def test_complete_entry_merges_metadata(self, make_job):
        job = make_job()
        [entry] = get_run_entries(create_run(job, [], trigger='manual'))
        mark_running([entry])

        complete_entry(entry, 1024, '/backups/a.gz', {'format': 'custom'}, 'log text')

        assert entry.status == 'completed'
        assert entry.completed_at is not None
        assert entry.file_size == 1024
        assert entry.file_path == '/backups/a.gz'
        assert entry.execution_log == 'log text'
        assert entry.run_metadata['format'] == 'custom'
        assert entry.run_metadata['trigger'] == 'manual'

    def test_fail_entries_skips_finished_entries(self, make_job, make_destination):
        destinations = [make_destination(name='A'), make_destination(name='B')]
        job = make_job(destinations=destinations)
        first, second = get_run_entries(create_run(job, destinations))
        mark_running([first, second])
        complete_entry(first, 10, '/a', {}, '')

        fail_entries([first, second], 'boom', 'log')

        assert first.status == 'completed'
        assert first.error_message is None
        assert second.status == 'failed'
        assert second.error_message == 'boom'
        assert second.execution_log == 'log'


class TestHeartbeat:
    """Test heartbeat recording."""

    def test_record_heartbeat_updates_running_entries_only(self, db, make_job, make_destination):
        destinations = [make_destination(name='A'), make_destination(name='B')]
        job = make_job(destinations=destinations)
        running, pending = get_run_entries(create_run(job, destinations))
        mark_running([running])
        old = utcnow() - timedelta(minutes=5)
        running.heartbeat_at = old
        pending.heartbeat_at = old
        db.session.commit()

        assert record_heartbeat([running.id, pending.id]) == 1

        db.session.expire_all()
        assert db.session.get(BackupHistory, running.id).heartbeat_at > old
        assert db.session.get(BackupHistory, pending.id).heartbeat_at == old

    def test_heartbeat_thread_refreshes_entries(self, app, db, make_job):
        job = make_job()
        [entry] = get_run_entries(create_run(job, []))
        mark_running([entry])
        old = utcnow() - timedelta(minutes=5)
        entry.heartbeat_at = old
        db.session.commit()

        with Heartbeat(app, [entry.id], interval=0.1):
            time.sleep(0.5)

        db.session.expire_all()
        assert db.session.get(BackupHistory, entry.id).heartbeat_at > old


class TestCleanupStaleRunningJobs:
    """Test crash recovery."""

    def _entry(self, db, job, status, heartbeat_age_seconds):
        entry = BackupHistory(
            backup_job_id=job.id,
            run_id=f'run-{status}-{heartbeat_age_seconds}',
            status=status,
            started_at=utcnow() - timedelta(hours=1),
            heartbeat_at=(utcnow() - timedelta(seconds=heartbeat_age_seconds)
                          if heartbeat_age_seconds is not None else None),
        )
        db.session.add(entry)
        db.session.commit()
        return entry.id

    def test_stale_running_entries_are_failed(self, db, make_job):
        job = make_job()
        stale = self._entry(db, job, 'running', 600)
        fresh = self._entry(db, job, 'running', 10)
        no_heartbeat = self._entry(db, job, 'running', None)

        count = cleanup_stale_running_jobs(threshold_seconds=120)

        assert count == 2
        db.session.expire_all()
        stale_entry = db.session.get(BackupHistory, stale)
        assert stale_entry.status == 'failed'
        assert stale_entry.error_message == INTERRUPTED_MESSAGE
        assert stale_entry.completed_at is not None
        assert db.session.get(BackupHistory, no_heartbeat).status == 'failed'
        assert db.session.get(BackupHistory, fresh).status == 'running'

    def test_pending_entries_only_swept_at_startup(self, db, make_job):
        job = make_job()
        queued = self._entry(db, job, 'pending', 600)

        assert cleanup_stale_running_jobs(threshold_seconds=120) == 0
        assert cleanup_stale_running_jobs(threshold_seconds=120, include_pending=True) == 1

        db.session.expire_all()
        assert db.session.get(BackupHistory, queued).error_message == INTERRUPTED_MESSAGE

    def test_fresh_pending_entries_failed_at_startup(self, db, make_job, make_destination):
        destinations = [make_destination(name='A'), make_destination(name='B')]
        job = make_job(destinations=destinations)
        run_id = create_run(job, destinations)

        # Entries queued moments before the restart have fresh heartbeats
        assert cleanup_stale_running_jobs(threshold_seconds=120) == 0
        assert cleanup_stale_running_jobs(threshold_seconds=120, include_pending=True) == 2

        db.session.expire_all()
        assert [entry.status for entry in get_run_entries(run_id)] == ['failed', 'failed']
        assert get_run_status(run_id)['status'] == 'failed'

    def test_fresh_running_entries_survive_startup_sweep(self, db, make_job):
        job = make_job()
        [entry] = get_run_entries(create_run(job, []))
        mark_running([entry])

        assert cleanup_stale_running_jobs(threshold_seconds=120, include_pending=True) == 0
        db.session.expire_all()
        assert db.session.get(BackupHistory, entry.id).status == 'running'

    def test_finished_entries_untouched(self, db, make_job):
        job = make_job()
        done = self._entry(db, job, 'completed', 6000)

        assert cleanup_stale_running_jobs(threshold_seconds=120, include_pending=True) == 0
        db.session.expire_all()
        assert db.session.get(BackupHistory, done).status == 'completed'

    def test_threshold_defaults_to_config(self, app, db, make_job):
        app.config['STALE_RUN_THRESHOLD_SECONDS'] = 1000
        job = make_job()
        self._entry(db, job, 'running', 600)

        assert cleanup_stale_running_jobs() == 0


class TestRunStatus:
    """Test run and job reporting."""

    def test_partial_run_status(self, make_job, make_destination):
        destinations = [make_destination(name='Disk'), make_destination(name='S3')]
        job = make_job(destinations=destinations)
        run_id = create_run(job, destinations)
        first, second = get_run_entries(run_id)
        mark_running([first, second])
        complete_entry(first, 2048, '/backups/a.gz', {}, '')
        fail_entry(second, 'upload failed')

        status = get_run_status(run_id)

        assert status['status'] == 'partial'
        assert status['total'] == 2
        assert status['completed'] == 1
        assert status['failed'] == 1
        assert status['total_size'] == 2048
        assert status['completed_at'] is not None
        assert [d['destination_name'] for d in status['destinations']] == ['Disk', 'S3']

    def test_running_run_has_no_completion_time(self, make_job, make_destination):
        destinations = [make_destination(name='A'), make_destination(name='B')]
        job = make_job(destinations=destinations)
        run_id = create_run(job, destinations)
        first, second = get_run_entries(run_id)
        mark_running([first, second])
        complete_entry(first, 1, '/a', {}, '')

        status = get_run_status(run_id)

        assert status['status'] == 'running'
        assert status['completed_at'] is None

    def test_unknown_run(self, db):
        assert get_run_status('does-not-exist') is None

    def test_job_stats_and_recent_runs(self, make_job):
        job = make_job()
        ok_run = create_run(job, [])
        [ok] = get_run_entries(ok_run)
        mark_running([ok])
        complete_entry(ok, 100, '/a', {}, '')
        failed_run = create_run(job, [])
        [failed] = get_run_entries(failed_run)
        fail_entry(failed, 'boom')

        stats = get_job_stats(job.id)

        assert stats['total_runs'] == 2
        assert stats['successful_runs'] == 1
        assert stats['failed_runs'] == 1
        assert stats['last_success'] is not None
        assert stats['avg_duration_seconds'] is not None

        recent = get_recent_runs(job.id)
        assert [run['run_id'] for run in recent] == [failed_run, ok_run]
