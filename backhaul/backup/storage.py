"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: any S3-compatible object store (AWS, R2, Hetzner, MinIO, ...)
- LocalStorage: a directory on the local filesystem
"""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .credentials import ObjectStorageCredentials
from .errors import CopyError, StorageError, UploadError

logger = logging.getLogger(__name__)

# Files above this size are uploaded in parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


def build_object_key(prefix: Optional[str], filename: str) -> str:
    """Object key for an artifact: destination prefix (if any) + filename."""
    prefix = (prefix or '').strip().rstrip('/')
    return f"{prefix}/{filename}" if prefix else filename


def is_directory_marker(key: str, size: int) -> bool:
    """
    Keys ending in '/' and empty extension-less objects are folder
    placeholders created by consoles, not data.
    """
    if key.endswith('/'):
        return True
    name = key.rsplit('/', 1)[-1]
    return size == 0 and '.' not in name


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for one bucket on an S3-compatible store.

    Objects are stored under the configured prefix:
    {prefix}/{filename}
    """

    def __init__(self, credentials: ObjectStorageCredentials, bucket_name: str, prefix: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            credentials: Resolved access key pair, region and optional endpoint
            bucket_name: Bucket name
            prefix: Key prefix inside the bucket
        """
        self.bucket_name = bucket_name
        self.prefix = (prefix or '').strip().rstrip('/')
        self.region = credentials.region or 'auto'

        client_kwargs = {
            'aws_access_key_id': credentials.access_key_id,
            'aws_secret_access_key': credentials.secret_access_key,
            'region_name': self.region,
        }
        # Custom endpoints (MinIO, Hetzner, R2) need path-style addressing
        if credentials.endpoint:
            client_kwargs['endpoint_url'] = credentials.endpoint
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def key_for(self, filename: str) -> str:
        return build_object_key(self.prefix, filename)

    def uri_for(self, key: str) -> str:
        return f"s3://{self.bucket_name}/{key}"

    def upload(self, local_path: str, key: Optional[str] = None) -> str:
        """
        Upload a file.

        Args:
            local_path: Path to local file
            key: Object key (default: prefix + file name)

        Returns:
            Object key of the uploaded file

        Raises:
            UploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        key = key or self.key_for(os.path.basename(local_path))

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

            return key

        except ClientError as e:
            raise UploadError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except (BotoCoreError, OSError) as e:
            raise UploadError(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        """Upload a large file in chunks; the upload is aborted on any failure."""
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {key}: {abort_error}")
            raise

    def download(self, key: str, local_path: str) -> int:
        """
        Download an object to a local file, creating parent directories.

        Returns:
            Size of the downloaded file in bytes

        Raises:
            StorageError: If download fails
        """
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            self.s3_client.download_file(self.bucket_name, key, local_path)
            return os.path.getsize(local_path)
        except ClientError as e:
            raise StorageError(f"S3 download of {key} failed ({_client_error_code(e)}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 download of {key} failed: {e}")

    def delete(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: Optional[str] = None, skip_markers: bool = True) -> List[Dict]:
        """
        List objects under a prefix.

        Args:
            prefix: Key prefix to filter by (default: this storage's prefix)
            skip_markers: Leave out directory placeholder keys

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageError: If listing fails
        """
        prefix = self.prefix if prefix is None else prefix
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    if skip_markers and is_directory_marker(obj['Key'], obj['Size']):
                        continue
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")


class LocalStorage:
    """
    Handler for storing artifacts in a local directory.

    Artifacts are stored flat: {base_path}/{filename}
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    def store(self, source_path: str, filename: Optional[str] = None) -> str:
        """
        Copy an artifact into the directory and confirm the copy's size.

        Returns:
            Full path of the stored file

        Raises:
            CopyError: If the copy fails or is incomplete
        """
        if not os.path.exists(source_path):
            raise CopyError(f"Source file not found: {source_path}")

        dest_path = self.base_path / (filename or os.path.basename(source_path))

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, dest_path)
            copied_size = dest_path.stat().st_size
        except PermissionError as e:
            raise CopyError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise CopyError(f"Failed to copy to {dest_path}: {e}")

        expected_size = os.path.getsize(source_path)
        if copied_size != expected_size:
            raise CopyError(f"Incomplete copy to {dest_path}: {copied_size} of {expected_size} bytes")

        return str(dest_path)

    def delete(self, path: str):
        """
        Delete a file or directory inside the storage directory.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / path

        try:
            if full_path.is_dir():
                shutil.rmtree(full_path)
            elif full_path.exists():
                full_path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete {full_path}: {e}")

    def list_files(self, name_prefix: str = '') -> List[Dict]:
        """
        List top-level entries whose name starts with ``name_prefix``.

        Returns:
            List of dicts with 'path', 'modified', and 'size' keys
        """
        if not self.base_path.exists():
            return []

        try:
            files = []

            for entry in self.base_path.iterdir():
                if not entry.name.startswith(name_prefix):
                    continue
                stat = entry.stat()
                files.append({
                    'path': entry.name,
                    'modified': datetime.fromtimestamp(stat.st_mtime),
                    'size': stat.st_size
                })

            return files

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")
