from datetime import datetime, timezone
from backhaul import db


def utcnow():
    """Naive UTC timestamp (SQLite stores datetimes without a zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


SOURCE_TYPES = ('postgres', 'mysql', 'mongodb', 'redis', 's3')
DESTINATION_TYPES = ('local', 's3')
HISTORY_STATUSES = ('pending', 'running', 'completed', 'failed')


backup_job_destinations = db.Table(
    'backup_job_destinations',
    db.Column('backup_job_id', db.Integer, db.ForeignKey('backup_jobs.id', ondelete='CASCADE'), primary_key=True),
    db.Column('destination_id', db.Integer, db.ForeignKey('backup_destinations.id', ondelete='CASCADE'), primary_key=True),
)


class CredentialProvider(db.Model):
    """Reusable object-storage credentials (secret fields encrypted at rest)"""
    __tablename__ = 'credential_providers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=False, default='s3')
    provider_preset = db.Column(db.String(50), nullable=False, default='custom')  # aws, hetzner, minio, ...
    config = db.Column(db.JSON, nullable=False)  # endpoint, region, access_key_id, secret_access_key
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f'<CredentialProvider {self.name} type={self.type}>'


class BackupDestination(db.Model):
    """Where artifacts are delivered: a local directory or an S3-compatible bucket"""
    __tablename__ = 'backup_destinations'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # 'local' or 's3'
    config = db.Column(db.JSON, nullable=False)  # local: path / s3: bucket, prefix
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    credential_provider_id = db.Column(
        db.Integer, db.ForeignKey('credential_providers.id', ondelete='SET NULL'), nullable=True
    )
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    credential_provider = db.relationship('CredentialProvider')

    def __repr__(self):
        return f'<BackupDestination {self.name} type={self.type}>'


class BackupJob(db.Model):
    """Backup job configuration"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # postgres, mysql, mongodb, redis, s3
    config = db.Column(db.JSON, nullable=False)  # type-specific, secret fields encrypted
    schedule = db.Column(db.String(100))  # Cron expression
    retention_days = db.Column(db.Integer, default=30)
    retry_count = db.Column(db.Integer, default=3, nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    source_credential_provider_id = db.Column(
        db.Integer, db.ForeignKey('credential_providers.id', ondelete='SET NULL'), nullable=True
    )
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    destinations = db.relationship('BackupDestination', secondary=backup_job_destinations, lazy='selectin',
                                   order_by='BackupDestination.id')
    history = db.relationship('BackupHistory', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def __repr__(self):
        return f'<BackupJob {self.name} type={self.type} enabled={self.enabled}>'


class BackupHistory(db.Model):
    """One row per (run, destination): the unit of execution tracking"""
    __tablename__ = 'backup_history'

    id = db.Column(db.Integer, primary_key=True)
    backup_job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id', ondelete='CASCADE'))
    destination_id = db.Column(db.Integer, db.ForeignKey('backup_destinations.id', ondelete='CASCADE'))
    run_id = db.Column(db.String(36), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, index=True)  # pending, running, completed, failed
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    completed_at = db.Column(db.DateTime)
    heartbeat_at = db.Column(db.DateTime)
    file_size = db.Column(db.BigInteger)
    file_path = db.Column(db.String(1024))
    error_message = db.Column(db.Text)
    execution_log = db.Column(db.Text)  # Captured stdout/stderr and step log
    # 'metadata' is reserved on declarative models
    run_metadata = db.Column('metadata', db.JSON)

    # Relationships
    job = db.relationship('BackupJob', back_populates='history')
    destination = db.relationship('BackupDestination')

    def __repr__(self):
        return f'<BackupHistory run_id={self.run_id} destination_id={self.destination_id} status={self.status}>'
