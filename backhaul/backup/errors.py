"""
Exception hierarchy for the backup engine.

Every error can carry the execution log accumulated up to the failure, kept
separate from the message so it can be stored on the history entry as-is.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for backup engine failures."""

    def __init__(self, message: str, execution_log: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.execution_log = execution_log

    def with_log(self, execution_log: str) -> 'BackupError':
        """Attach the execution log if none is set yet and return self."""
        if self.execution_log is None:
            self.execution_log = execution_log
        return self


class ConfigurationError(BackupError):
    """Missing or invalid source/destination configuration. Never retried."""
    pass


class CredentialResolutionError(ConfigurationError):
    """Credential provider missing or its secrets could not be decrypted."""
    pass


class ExecutionError(BackupError):
    """An external tool failed or produced unusable output."""

    def __init__(self, message: str, stdout: str = '', stderr: str = '',
                 returncode: Optional[int] = None, execution_log: Optional[str] = None):
        super().__init__(message, execution_log)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


class CommandTimeoutError(ExecutionError):
    """Raised by the process runner when a command exceeds its timeout."""
    pass


class CompressionError(ExecutionError):
    """Raised when an artifact cannot be compressed."""
    pass


class StorageError(BackupError):
    """Raised when a storage operation fails."""
    pass


class UploadError(StorageError):
    """Upload to object storage failed."""
    pass


class CopyError(StorageError):
    """Copy to a local destination failed."""
    pass


def is_retryable(exc: BaseException) -> bool:
    """
    Whether a failure is attempt-level and worth another attempt.

    Configuration errors fail permanently; tool and storage failures are
    retried within the job's attempt budget.
    """
    if isinstance(exc, ConfigurationError):
        return False
    return isinstance(exc, (ExecutionError, StorageError))
