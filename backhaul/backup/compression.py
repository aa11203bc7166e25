"""
Compression of dump artifacts.

- Directory outputs (mongodump): tar.gz archive
- Single-file outputs (SQL dumps, RDB snapshots): gzip

The uncompressed original is removed once compression succeeds, and the
compressed size is what gets recorded on the history entry.
"""

import gzip
import os
import re
import shutil
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from .errors import CompressionError

# Characters allowed in the identifier part of an artifact name
_UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9_.-]')

# Timestamp part of an artifact name, as produced by artifact_timestamp()
ARTIFACT_TIMESTAMP_PATTERN = r'\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z'


def artifact_timestamp(now: Optional[datetime] = None) -> str:
    """
    ISO 8601 UTC timestamp safe for use in file names and object keys.

    Colons and dots are replaced by dashes, e.g. 2024-05-01T02-00-00-000Z
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    iso = now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"
    return iso.replace(':', '-').replace('.', '-')


def generate_artifact_name(source_type: str, identifier: str, now: Optional[datetime] = None) -> str:
    """
    Generate the base artifact name (without extension).

    Format: {source_type}_{identifier}_{timestamp}
    """
    safe_identifier = _UNSAFE_NAME_CHARS.sub('_', str(identifier)) or 'backup'
    return f"{source_type}_{safe_identifier}_{artifact_timestamp(now)}"


def is_artifact_name(name: str, stem: str) -> bool:
    """
    True if ``name`` is ``stem`` directly followed by an artifact timestamp
    and optional extensions, e.g. postgres_app_2024-05-01T02-00-00-000Z.dump.gz.

    postgres_app_v2_... does not match the stem postgres_app_.
    """
    pattern = re.escape(stem) + ARTIFACT_TIMESTAMP_PATTERN + r'(\.[A-Za-z0-9.]+)?'
    return re.fullmatch(pattern, name) is not None


def compress_artifact(path: str) -> Tuple[str, int]:
    """
    Compress a dump file or directory and delete the original.

    Args:
        path: File or directory produced by a dump tool

    Returns:
        Tuple of (compressed path, compressed size in bytes)

    Raises:
        CompressionError: If the path is missing or compression fails
    """
    source = Path(path)

    if source.is_dir():
        compressed_path = f"{source}.tar.gz"
        handler = _compress_directory
    elif source.is_file():
        compressed_path = f"{source}.gz"
        handler = _compress_file
    else:
        raise CompressionError(f"Path does not exist: {path}")

    try:
        handler(source, compressed_path)
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(compressed_path):
            os.remove(compressed_path)
        raise CompressionError(f"Failed to compress {source.name}: {e}")

    if source.is_dir():
        shutil.rmtree(source)
    else:
        source.unlink()

    return compressed_path, get_artifact_size(compressed_path)


def _compress_directory(source: Path, archive_path: str):
    with tarfile.open(archive_path, 'w:gz') as tar:
        # Basename as arcname so the archive unpacks into one folder
        tar.add(source, arcname=source.name, recursive=True)


def _compress_file(source: Path, archive_path: str):
    with open(source, 'rb') as f_in, gzip.open(archive_path, 'wb') as f_out:
        shutil.copyfileobj(f_in, f_out)


def get_artifact_size(artifact_path: str) -> int:
    """
    Get the size of an artifact in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(artifact_path)
    except FileNotFoundError:
        raise CompressionError(f"Artifact not found: {artifact_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get artifact size: {e}")
