"""
Shared pytest fixtures for Backhaul tests.

This module provides fixtures for:
- Flask app with a file-backed SQLite database per test
- Job, destination and credential provider factories
- Mocked S3 (moto) buckets
- Scheduler and notifier cleanup between tests
"""

import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backhaul import create_app, db as _db
from backhaul.models import BackupJob, BackupDestination, CredentialProvider
from backhaul.utils.crypto import CryptoManager


TEST_REGION = 'us-east-1'
SOURCE_BUCKET = 'source-bucket'
DEST_BUCKET = 'dest-bucket'


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses a SQLite file so heartbeat threads share the test's data.
    """
    app = create_app('testing', config_overrides={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'backhaul.db'}",
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'TEMP_BACKUP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables, inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset the scheduler globals and notifier registry after each test."""
    yield

    from backhaul import scheduler as scheduler_module
    from backhaul.backup.queue import clear_notifiers

    if scheduler_module.scheduler is not None and getattr(scheduler_module.scheduler, 'running', False) is True:
        scheduler_module.scheduler.shutdown(wait=False)
    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
    clear_notifiers()


@pytest.fixture(scope='function')
def crypto_manager_initialized():
    """A separate CryptoManager initialized with a test secret."""
    cm = CryptoManager()
    cm.initialize('unit-test-secret-0123456789abcdefghij')
    return cm


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', TEST_REGION)


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock S3 service using moto.

    Creates 'source-bucket' and 'dest-bucket' in us-east-1.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name=TEST_REGION)
        s3.create_bucket(Bucket=SOURCE_BUCKET)
        s3.create_bucket(Bucket=DEST_BUCKET)
        yield s3


@pytest.fixture
def make_provider(db):
    """Factory for credential providers (secrets encrypted like the API stores them)."""
    from backhaul.backup.credentials import encrypt_provider_config

    def _make(name='Test provider', **overrides):
        config = {
            'access_key_id': 'AKIATESTKEY',
            'secret_access_key': 'test-secret-access-key',
            'region': TEST_REGION,
        }
        config.update(overrides)
        provider = CredentialProvider(
            name=name,
            type='s3',
            provider_preset='aws',
            config=encrypt_provider_config('s3', config),
        )
        db.session.add(provider)
        db.session.commit()
        return provider

    return _make


@pytest.fixture
def make_destination(db):
    """Factory for backup destinations."""

    def _make(name='Local', type='local', config=None, enabled=True, provider=None):
        destination = BackupDestination(
            name=name,
            type=type,
            config=config or {},
            enabled=enabled,
            credential_provider_id=provider.id if provider else None,
        )
        db.session.add(destination)
        db.session.commit()
        return destination

    return _make


@pytest.fixture
def make_job(db):
    """Factory for backup jobs; configs are encrypted like the API stores them."""
    from backhaul.backup.credentials import encrypt_config

    def _make(name='test_postgres_backup', type='postgres', config=None, destinations=(),
              schedule='0 2 * * *', retention_days=30, retry_count=1, enabled=True,
              source_credential_provider=None):
        if config is None:
            config = {
                'host': 'db.example.com',
                'port': 5432,
                'database': 'appdb',
                'username': 'backup',
                'password': 'pg-secret-password',
            }
        job = BackupJob(
            name=name,
            type=type,
            config=encrypt_config(type, config),
            schedule=schedule,
            retention_days=retention_days,
            retry_count=retry_count,
            enabled=enabled,
            source_credential_provider_id=source_credential_provider.id if source_credential_provider else None,
        )
        job.destinations = list(destinations)
        db.session.add(job)
        db.session.commit()
        return job

    return _make


@pytest.fixture
def local_destination(make_destination, tmp_path):
    path = tmp_path / 'local-destination'
    return make_destination(name='Local disk', type='local', config={'path': str(path)})


@pytest.fixture
def s3_destination(make_destination, make_provider):
    provider = make_provider(name='Dest provider')
    return make_destination(
        name='Offsite S3',
        type='s3',
        config={'bucket': DEST_BUCKET, 'prefix': 'backups'},
        provider=provider,
    )


@pytest.fixture
def fake_artifact_source():
    """
    Patch the executor's source factory with a strategy that writes a small
    artifact instead of running a dump tool.
    """
    from backhaul.backup.sources import BackupResult

    def _backup(work_dir):
        path = os.path.join(work_dir, 'postgres_appdb_2024-05-01T02-00-00-000Z.dump.gz')
        with open(path, 'wb') as f:
            f.write(b'dump-bytes' * 100)
        return BackupResult(
            file_path=path,
            file_size=os.path.getsize(path),
            metadata={'database': 'appdb', 'format': 'custom'},
            execution_log='[2024-05-01T02:00:00Z] Starting PostgreSQL backup',
        )

    source = MagicMock()
    source.produces_artifact = True
    source.backup.side_effect = _backup

    with patch('backhaul.backup.executor.create_source', return_value=source):
        yield source


@pytest.fixture
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('backhaul.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
