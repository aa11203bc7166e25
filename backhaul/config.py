import os


def _int_env(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """Base configuration"""

    # Encryption secret for credentials stored at rest
    ENCRYPTION_SECRET = os.environ.get('ENCRYPTION_SECRET')
    if not ENCRYPTION_SECRET:
        # Try to read from persistent file in /data directory
        secret_file = '/data/.encryption_secret'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                ENCRYPTION_SECRET = f.read().strip()
    ENCRYPTION_SALT = os.environ.get('ENCRYPTION_SALT') or 'backhaul-credentials-v1'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/backhaul.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Storage
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/data/backups'
    TEMP_BACKUP_DIR = os.environ.get('TEMP_BACKUP_DIR') or '/tmp/backhaul-backups'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Execution tracking
    HEARTBEAT_INTERVAL_SECONDS = _int_env('HEARTBEAT_INTERVAL_SECONDS', 30)
    STALE_RUN_THRESHOLD_SECONDS = _int_env('STALE_RUN_THRESHOLD_SECONDS', 120)
    STALE_SWEEP_INTERVAL_SECONDS = _int_env('STALE_SWEEP_INTERVAL_SECONDS', 120)

    # External tools
    COMMAND_TIMEOUT_SECONDS = _int_env('COMMAND_TIMEOUT_SECONDS', None)
    REDIS_BACKUP_TIMEOUT_SECONDS = _int_env('REDIS_BACKUP_TIMEOUT_SECONDS', 300)
    KILL_GRACE_SECONDS = _int_env('KILL_GRACE_SECONDS', 5)
    PG_DUMP_VERSIONS = [17, 16, 15, 14]

    # Queue
    WORKER_CONCURRENCY = _int_env('WORKER_CONCURRENCY', 2)
    DESTINATION_CONCURRENCY = _int_env('DESTINATION_CONCURRENCY', 4)
    RETRY_BACKOFF_SECONDS = _int_env('RETRY_BACKOFF_SECONDS', 5)

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "backhaul.db")}'
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    TEMP_BACKUP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    ENCRYPTION_SECRET = Config.ENCRYPTION_SECRET or 'development-only-encryption-secret'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(DevelopmentConfig):
    """Test configuration - the fixtures override paths per test"""
    TESTING = True
    DEBUG = False
    ENCRYPTION_SECRET = 'test-encryption-secret-0123456789abcdef'
    HEARTBEAT_INTERVAL_SECONDS = 1
    RETRY_BACKOFF_SECONDS = 0


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
