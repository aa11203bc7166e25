"""
Destination distributor - delivers one artifact to every destination of a run.

Each destination is handled independently on a thread pool: one failing
destination never prevents delivery to the others. Workers only do file and
network I/O; the caller records the outcomes in the database.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import BackupError, ConfigurationError, CopyError, StorageError, UploadError
from .execution_log import ExecutionLog
from .sources import BackupResult
from .storage import LocalStorage, S3Storage

logger = logging.getLogger(__name__)


@dataclass
class DeliveryTarget:
    """A destination of one run, with its config already resolved."""
    entry_id: int
    destination_id: Optional[int]
    name: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryOutcome:
    """Result of delivering to one destination."""
    target: DeliveryTarget
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_log: str = ''
    error: Optional[BackupError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def deliver_to_local(artifact_path: str, config: Dict[str, Any], log: ExecutionLog):
    """Copy the artifact into a local directory and confirm its size."""
    path = config.get('path')
    if not path:
        raise ConfigurationError("Local destination has no path configured")

    log.log(f"Copying to local destination: {path}")
    stored_path = LocalStorage(path).store(artifact_path)
    size = os.path.getsize(stored_path)
    log.log(f"Copied to {stored_path} ({size} bytes)")
    return stored_path, size


def deliver_to_s3(artifact_path: str, config: Dict[str, Any], log: ExecutionLog):
    """Upload the artifact under prefix + filename."""
    credentials = config.get('credentials')
    if credentials is None:
        raise ConfigurationError("S3 destination credentials were not resolved")

    storage = S3Storage(credentials, config['bucket'], config.get('prefix'))
    key = storage.key_for(os.path.basename(artifact_path))
    log.log(f"Uploading to S3: {storage.uri_for(key)}")

    storage.upload(artifact_path, key)
    size = os.path.getsize(artifact_path)
    log.log(f"Uploaded to S3: {storage.uri_for(key)}")
    return storage.uri_for(key), size


DELIVERY_HANDLERS = {
    'local': deliver_to_local,
    's3': deliver_to_s3,
}


class DestinationDistributor:
    """Fans one run's work out to its destinations on a bounded thread pool."""

    def __init__(self, max_workers: int = 4):
        self.max_workers = max(1, max_workers)

    def _deliver(self, artifact: BackupResult, target: DeliveryTarget) -> DeliveryOutcome:
        log = ExecutionLog(logger)
        log.extend(artifact.execution_log)
        log.log(f"Delivering to destination: {target.name}")

        handler = DELIVERY_HANDLERS.get(target.type)
        try:
            if handler is None:
                raise ConfigurationError(f"Unsupported destination type: {target.type}")
            file_path, file_size = handler(artifact.file_path, target.config, log)
        except BackupError as e:
            log.error(f"Delivery failed: {e}")
            return DeliveryOutcome(target=target, execution_log=str(log), error=e.with_log(str(log)))
        except OSError as e:
            error_class = UploadError if target.type == 's3' else CopyError
            log.error(f"Delivery failed: {e}")
            return DeliveryOutcome(target=target, execution_log=str(log),
                                   error=error_class(str(e), execution_log=str(log)))

        return DeliveryOutcome(
            target=target,
            file_path=file_path,
            file_size=file_size,
            metadata=dict(artifact.metadata),
            execution_log=str(log),
        )

    def run_each(self, targets: List[DeliveryTarget],
                 work: Callable[[DeliveryTarget], DeliveryOutcome],
                 on_outcome: Optional[Callable[[DeliveryOutcome], None]] = None) -> List[DeliveryOutcome]:
        """
        Run ``work`` for every target concurrently.

        ``on_outcome`` is called on the calling thread as each target
        finishes, so it may write to the database.
        """
        outcomes = []
        if not targets:
            return outcomes

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets)),
                                thread_name_prefix='backup-destination') as pool:
            futures = {pool.submit(work, target): target for target in targets}
            for future in as_completed(futures):
                target = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    # Unexpected failure inside a worker stays scoped to its destination
                    logger.exception(f"Delivery to {target.name} crashed")
                    outcome = DeliveryOutcome(target=target, error=StorageError(str(e)))
                outcomes.append(outcome)
                if on_outcome:
                    on_outcome(outcome)

        return outcomes

    def distribute(self, artifact: BackupResult, targets: List[DeliveryTarget],
                   on_outcome: Optional[Callable[[DeliveryOutcome], None]] = None) -> List[DeliveryOutcome]:
        """Deliver one artifact to every target."""
        return self.run_each(targets, lambda target: self._deliver(artifact, target), on_outcome)
