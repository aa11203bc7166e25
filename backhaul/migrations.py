"""
Database migrations for Backhaul.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from backhaul import db

logger = logging.getLogger(__name__)


# (table, column, DDL type) - additive columns introduced after the first release
ADDITIVE_COLUMNS = [
    ('backup_history', 'run_id', 'VARCHAR(36)'),
    ('backup_history', 'heartbeat_at', 'TIMESTAMP'),
    ('backup_history', 'execution_log', 'TEXT'),
    ('backup_jobs', 'retry_count', 'INTEGER NOT NULL DEFAULT 3'),
    ('backup_jobs', 'source_credential_provider_id', 'INTEGER'),
    ('backup_destinations', 'credential_provider_id', 'INTEGER'),
]


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    This function creates tables if they don't exist and runs any necessary migrations.
    It's designed to be called from multiple Gunicorn workers without conflicts.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        # If no tables exist, create them all
        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except Exception as e:
                # Another worker may have created the schema first
                logger.error(f"Failed to create database schema: {e}")
        else:
            # Create any tables added since, then migrate columns
            db.create_all()
            run_migrations(app, inspector)


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    This function checks the database schema and applies any missing changes.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    tables = inspector.get_table_names()

    for table, column, ddl in ADDITIVE_COLUMNS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            logger.info(f"Successfully added {column} column")
        except Exception as e:
            logger.error(f"Failed to add {column} column: {e}")
            db.session.rollback()
            continue

        if (table, column) == ('backup_history', 'heartbeat_at'):
            _backfill_heartbeats()

    _encrypt_plaintext_secrets()


def _backfill_heartbeats():
    """
    Give running entries from before heartbeats existed a heartbeat, so the
    first recovery sweep doesn't fail them instantly.
    """
    try:
        db.session.execute(text(
            "UPDATE backup_history SET heartbeat_at = started_at "
            "WHERE status = 'running' AND heartbeat_at IS NULL"
        ))
        db.session.commit()
    except Exception as e:
        logger.error(f"Failed to backfill heartbeat_at: {e}")
        db.session.rollback()


def _encrypt_plaintext_secrets():
    """
    Encrypt secret fields that were stored in plaintext.

    Already-encrypted and masked values are left untouched, so running this
    on every startup is safe.
    """
    from backhaul.models import BackupJob, CredentialProvider
    from backhaul.backup.credentials import encrypt_config, encrypt_provider_config
    from backhaul.utils.crypto import crypto_manager

    if not crypto_manager.is_initialized:
        logger.warning("Crypto manager not initialized - skipping plaintext secret migration")
        return

    migrated_count = 0

    try:
        for job in BackupJob.query.all():
            encrypted = encrypt_config(job.type, job.config or {})
            if encrypted != job.config:
                job.config = encrypted
                migrated_count += 1

        for provider in CredentialProvider.query.all():
            encrypted = encrypt_provider_config(provider.type, provider.config or {})
            if encrypted != provider.config:
                provider.config = encrypted
                migrated_count += 1

        db.session.commit()
    except Exception as e:
        logger.error(f"Failed to encrypt plaintext secrets: {e}")
        db.session.rollback()
        return

    if migrated_count:
        logger.info(f"Encrypted plaintext secrets in {migrated_count} records")
