import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backhaul.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _should_init_scheduler(app) -> bool:
    """
    Only one process may own the scheduler and its worker pool:
    - Development mode: only the Flask reloader child process (not parent)
    - Production mode: only the designated Gunicorn worker (SCHEDULER_WORKER=true)
    - Tests start the scheduler themselves
    """
    if app.config.get('TESTING', False):
        return False

    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backhaul.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_BACKUP_DIR'], exist_ok=True)
    os.makedirs(app.config['BACKUP_DIR'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Credentials must be decryptable before plaintext secrets are migrated
    from backhaul.utils.crypto import crypto_manager

    if app.config.get('ENCRYPTION_SECRET'):
        crypto_manager.initialize(app.config['ENCRYPTION_SECRET'], app.config['ENCRYPTION_SALT'])
        app.logger.info("Crypto manager initialized")
    else:
        app.logger.error("ENCRYPTION_SECRET is not set - backups with stored credentials will fail")

    # Health check endpoint
    @app.route('/health')
    def health():
        from backhaul.scheduler import scheduler
        return {
            'status': 'healthy',
            'scheduler_running': bool(scheduler and scheduler.running),
        }, 200

    # Initialize database schema and run migrations
    from backhaul import models  # noqa: F401
    from backhaul.migrations import init_database_schema

    # This handles both fresh installations and existing databases with migrations
    init_database_schema(app)

    if _should_init_scheduler(app):
        from backhaul.scheduler import init_scheduler, start_scheduler, sync_backup_jobs, stop_scheduler
        from backhaul.backup.tracker import cleanup_stale_running_jobs
        import atexit

        app.logger.info("Initializing scheduler in this process...")

        # Anything still queued or running belongs to a process that is gone
        with app.app_context():
            cleanup_stale_running_jobs(include_pending=True)

        init_scheduler(app)
        start_scheduler()

        # Sync backup jobs from database to scheduler
        with app.app_context():
            sync_backup_jobs()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
