"""
Backup engine for Backhaul.

This module handles the core backup functionality including:
- Source strategies (postgres, mysql, mongodb, redis, s3)
- Credential resolution
- Compression
- Storage and delivery to destinations (S3 and local)
- Run execution, queueing and retries
- Execution tracking and crash recovery
- Retention policy enforcement
"""

from .errors import BackupError, ConfigurationError, ExecutionError, StorageError
from .executor import BackupExecutor, RunOutcome, execute_run
from .queue import enqueue, process_run, register_notifier
from .sources import create_source
from .storage import S3Storage, LocalStorage
from .tracker import cleanup_stale_running_jobs, get_run_status
from .retention import RetentionManager

__all__ = [
    'BackupError',
    'ConfigurationError',
    'ExecutionError',
    'StorageError',
    'BackupExecutor',
    'RunOutcome',
    'execute_run',
    'enqueue',
    'process_run',
    'register_notifier',
    'create_source',
    'S3Storage',
    'LocalStorage',
    'cleanup_stale_running_jobs',
    'get_run_status',
    'RetentionManager'
]
