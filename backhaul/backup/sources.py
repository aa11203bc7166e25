"""
Source strategies for backup operations.

Supports:
- PostgresSource: pg_dump (custom format), version-matched client binary
- MySQLSource: mysqldump with a short-lived credentials file
- MongoDBSource: mongodump of a connection string into a directory
- RedisSource: redis-cli RDB snapshot
- ObjectStorageSource: copy objects from an S3 bucket to each destination

Every database strategy validates its config before building an argument
vector, dumps into the run's working directory and compresses the result.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, urlsplit

from backhaul.utils.masking import CONNECTION_STRING_CREDENTIALS, mask_connection_string
from .compression import artifact_timestamp, compress_artifact, generate_artifact_name
from .errors import BackupError, ConfigurationError, ExecutionError, StorageError
from .execution_log import ExecutionLog
from .process import CommandResult, format_command, run_command
from .storage import S3Storage, build_object_key

logger = logging.getLogger(__name__)

SAFE_STRING = re.compile(r'^[a-zA-Z0-9_.-]+$')
SAFE_HOSTNAME = re.compile(r'^[a-zA-Z0-9.-]+$')

# Where distributions install version-specific PostgreSQL clients
PG_DUMP_PATH_PATTERNS = (
    '/usr/lib/postgresql/{version}/bin/pg_dump',  # Debian/Ubuntu
    '/usr/libexec/postgresql{version}/pg_dump',   # Alpine
    '/usr/bin/pg_dump{version}',
)


def validate_safe_string(value, field_name: str) -> str:
    """Allow only letters, digits, underscore, dot and dash."""
    if not isinstance(value, str) or not SAFE_STRING.match(value):
        raise ConfigurationError(f"Invalid {field_name}: contains unsafe characters")
    return value


def validate_hostname(value) -> str:
    if not isinstance(value, str) or not SAFE_HOSTNAME.match(value):
        raise ConfigurationError("Invalid hostname: contains unsafe characters")
    return value


def validate_port(value) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid port number: {value}")
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= 65535:
        raise ConfigurationError(f"Invalid port number: {value}")
    return value


@dataclass
class BackupResult:
    """What a strategy produced: the artifact, its size and format facts."""
    file_path: str
    file_size: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_log: str = ''


class BackupSource:
    """
    Base class for source strategies.

    Subclasses set ``source_type`` and ``required_fields`` and implement
    ``backup(work_dir)``.
    """

    source_type: str = ''
    required_fields: tuple = ()
    # False for sources that deliver to each destination themselves
    produces_artifact = True

    def __init__(self, config: Dict[str, Any], settings: Optional[Mapping] = None):
        self.config = config
        self.settings = settings or {}
        self.log = ExecutionLog(logger)
        self.validate()

    def validate(self):
        """Check required fields; subclasses add format validation."""
        for name in self.required_fields:
            value = self.config.get(name)
            if value is None or value == '':
                raise ConfigurationError(f"Missing required field: {name}")

    @property
    def artifact_identifier(self) -> str:
        """Middle part of artifact names, e.g. the database name."""
        return 'backup'

    def artifact_stem(self) -> str:
        """Common prefix of every artifact this source produces."""
        return f"{self.source_type}_{self.artifact_identifier}_"

    def backup(self, work_dir: str) -> BackupResult:
        raise NotImplementedError

    @property
    def command_timeout(self) -> Optional[float]:
        return self.settings.get('COMMAND_TIMEOUT_SECONDS')

    def _run(self, argv: List[str], label: str, redact=(), filter_stderr=None, **kwargs) -> CommandResult:
        """
        Run a tool, recording its output in the execution log.

        On failure the output is logged, the log is attached to the error
        and the error message is prefixed with ``label``.
        """
        kwargs.setdefault('grace_period', self.settings.get('KILL_GRACE_SECONDS', 5))
        try:
            result = run_command(argv, redact=redact, **kwargs)
        except ExecutionError as e:
            self.log.output(e.stdout, prefix='[stdout] ')
            self.log.output(_filter_lines(e.stderr, filter_stderr), prefix='[stderr] ')
            self.log.error(f"Backup failed: {e.message}")
            e.message = f"{label} failed: {e.message}"
            e.args = (e.message,)
            raise e.with_log(str(self.log))

        self.log.output(result.stdout, prefix='[stdout] ')
        self.log.output(_filter_lines(result.stderr, filter_stderr), prefix='[stderr] ')
        return result

    def _compress(self, path: str) -> BackupResult:
        self.log.log("Compressing backup...")
        try:
            compressed_path, size = compress_artifact(path)
        except BackupError as e:
            self.log.error(str(e))
            raise e.with_log(str(self.log))
        self.log.log(f"Compression complete, size: {size} bytes")
        return BackupResult(file_path=compressed_path, file_size=size)


def _filter_lines(text: str, needle: Optional[str]) -> str:
    if not text or not needle:
        return text
    return '\n'.join(line for line in text.splitlines() if needle not in line)


def _binary_exists(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


class _SqlSource(BackupSource):
    required_fields = ('host', 'port', 'database', 'username')

    def validate(self):
        super().validate()
        self.host = validate_hostname(self.config['host'])
        self.port = validate_port(self.config['port'])
        self.username = validate_safe_string(self.config['username'], 'username')
        self.database = validate_safe_string(self.config['database'], 'database')
        self.password = self.config.get('password') or None
        if self.password:
            self.log.add_redaction(self.password)

    @property
    def artifact_identifier(self) -> str:
        return self.database


class PostgresSource(_SqlSource):
    """pg_dump in custom format, using the client matching the server version."""

    source_type = 'postgres'

    def _env(self) -> Dict[str, str]:
        return {'PGPASSWORD': self.password} if self.password else {}

    def detect_server_version(self) -> int:
        """
        Major version of the server, or 0 if it cannot be determined.

        server_version_num is e.g. 170006 for 17.0.6
        """
        argv = [
            'psql',
            '-h', self.host,
            '-p', str(self.port),
            '-U', self.username,
            '-d', self.database,
            '-t',
            '-c', 'SHOW server_version_num'
        ]
        try:
            result = run_command(argv, env=self._env(), timeout=60,
                                 grace_period=self.settings.get('KILL_GRACE_SECONDS', 5),
                                 redact=[self.password])
            version_num = int(result.stdout.strip())
        except (ExecutionError, ValueError) as e:
            logger.warning(f"Failed to detect PostgreSQL version, using default pg_dump: {e}")
            return 0

        major_version = version_num // 10000
        logger.info(f"Detected PostgreSQL server version: {major_version} (version_num: {version_num})")
        return major_version

    def find_pg_dump(self, major_version: int) -> str:
        """
        Pick a pg_dump at least as new as the server.

        pg_dump can dump older servers but not newer ones, so the exact
        version is preferred, then the closest newer one, then PATH.
        """
        supported = sorted(self.settings.get('PG_DUMP_VERSIONS') or [17, 16, 15, 14])

        if major_version > 0:
            candidates = [major_version] if major_version in supported else []
            candidates += [version for version in supported if version > major_version]
            for version in candidates:
                for pattern in PG_DUMP_PATH_PATTERNS:
                    path = pattern.format(version=version)
                    if _binary_exists(path):
                        return path
            logger.warning(f"No pg_dump >= {major_version} found, falling back to PATH")

        return 'pg_dump'

    def backup(self, work_dir: str) -> BackupResult:
        file_path = os.path.join(work_dir, generate_artifact_name(self.source_type, self.database) + '.dump')

        server_version = self.detect_server_version()
        pg_dump = self.find_pg_dump(server_version)

        argv = [
            pg_dump,
            '-h', self.host,
            '-p', str(self.port),
            '-U', self.username,
            '-d', self.database,
            '-F', 'c',
            '-f', file_path
        ]

        self.log.log("Starting PostgreSQL backup")
        self.log.log(f"Command: {format_command(argv[:-2])}")
        self.log.log(f"Server version: {server_version or 'unknown'}")

        self._run(argv, 'PostgreSQL backup', env=self._env(), timeout=self.command_timeout,
                  redact=[self.password])
        self.log.log("Backup completed successfully")

        result = self._compress(file_path)
        result.metadata = {
            'database': self.database,
            'host': self.host,
            'format': 'custom',
            'compressed': True,
            'server_version': server_version or 'unknown',
            'pg_dump': pg_dump,
        }
        result.execution_log = str(self.log)
        return result


class MySQLSource(_SqlSource):
    """mysqldump; the password goes through a 0600 defaults file, never argv."""

    source_type = 'mysql'

    def _write_defaults_file(self, work_dir: str) -> str:
        path = os.path.join(work_dir, f".mysql-defaults-{artifact_timestamp()}")
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(f"[client]\npassword={self.password}\n")
        return path

    def backup(self, work_dir: str) -> BackupResult:
        file_path = os.path.join(work_dir, generate_artifact_name(self.source_type, self.database) + '.sql')
        use_ssl = self.config.get('ssl', True) is not False

        argv = [
            'mysqldump',
            '-h', self.host,
            '-P', str(self.port),
            '-u', self.username,
            f"--ssl-mode={'REQUIRED' if use_ssl else 'DISABLED'}",
            '--result-file', file_path,
            self.database
        ]

        self.log.log("Starting MySQL backup")
        self.log.log(
            f"Command: mysqldump -h {self.host} -P {self.port} -u {self.username} "
            f"{'--defaults-extra-file=*** ' if self.password else ''}{self.database}"
        )

        defaults_file = None
        try:
            if self.password:
                defaults_file = self._write_defaults_file(work_dir)
                # Must be the first option mysqldump sees
                argv.insert(1, f"--defaults-extra-file={defaults_file}")

            self._run(argv, 'MySQL backup', timeout=self.command_timeout)
        finally:
            if defaults_file and os.path.exists(defaults_file):
                os.remove(defaults_file)

        self.log.log("Dump completed successfully")

        result = self._compress(file_path)
        result.metadata = {
            'database': self.database,
            'host': self.host,
            'format': 'sql',
            'compressed': True,
            'ssl': use_ssl,
        }
        result.execution_log = str(self.log)
        return result


class MongoDBSource(BackupSource):
    """mongodump into a directory, archived as tar.gz."""

    source_type = 'mongodb'
    required_fields = ('connection_string',)

    def validate(self):
        super().validate()
        self.connection_string = str(self.config['connection_string'])
        match = CONNECTION_STRING_CREDENTIALS.search(self.connection_string)
        self.password = match.group(2) if match else None
        if self.password:
            self.log.add_redaction(self.password)

    @property
    def artifact_identifier(self) -> str:
        database = urlsplit(self.connection_string).path.strip('/')
        return database if database and SAFE_STRING.match(database) else 'all'

    def backup(self, work_dir: str) -> BackupResult:
        dump_dir = os.path.join(work_dir, generate_artifact_name(self.source_type, self.artifact_identifier))

        # The URI is a single argv element, never interpolated into a shell
        argv = [
            'mongodump',
            f"--uri={self.connection_string}",
            f"--out={dump_dir}"
        ]

        self.log.log("Starting MongoDB backup")
        self.log.log(f'Command: mongodump --uri="{mask_connection_string(self.connection_string)}" --out={dump_dir}')

        self._run(argv, 'MongoDB backup', timeout=self.command_timeout, redact=[self.password])
        self.log.log("Dump completed successfully")

        if not os.path.isdir(dump_dir):
            # mongodump writes nothing for an empty deployment
            os.makedirs(dump_dir)

        result = self._compress(dump_dir)
        result.metadata = {
            'database': self.artifact_identifier,
            'format': 'bson',
            'compressed': True,
        }
        result.execution_log = str(self.log)
        return result


class RedisSource(BackupSource):
    """redis-cli --rdb snapshot; an empty snapshot counts as a failure."""

    source_type = 'redis'
    required_fields = ('host', 'port')

    def validate(self):
        super().validate()
        self.host = validate_hostname(self.config['host'])
        self.port = validate_port(self.config['port'])
        self.password = self.config.get('password') or None
        self.username = self.config.get('username') or 'default'
        self.tls = bool(self.config.get('tls', False))

        database = self.config.get('database') or 0
        try:
            self.database = int(database)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid redis database index: {database}")

        if self.password:
            self.log.add_redaction(self.password)
            self.log.add_redaction(quote(self.password, safe=''))

    @property
    def artifact_identifier(self) -> str:
        return self.host

    def build_url(self) -> str:
        """redis[s]://[user:password@]host:port[/database] with encoded credentials."""
        protocol = 'rediss' if self.tls else 'redis'
        url = f"{protocol}://"
        if self.password:
            url += f"{quote(self.username, safe='')}:{quote(self.password, safe='')}@"
        url += f"{self.host}:{self.port}"
        if self.database != 0:
            url += f"/{self.database}"
        return url

    def backup(self, work_dir: str) -> BackupResult:
        file_path = os.path.join(work_dir, generate_artifact_name(self.source_type, self.host) + '.rdb')
        argv = ['redis-cli', '-u', self.build_url(), '--rdb', file_path]

        self.log.log("Starting Redis backup")
        self.log.log(f"Target: {self.host}:{self.port}, database: {self.database}, "
                     f"TLS: {'yes' if self.tls else 'no'}")
        self.log.log(f"Executing: redis-cli -u [masked] --rdb {file_path}")

        try:
            self._run(
                argv, 'Redis backup',
                timeout=self.settings.get('REDIS_BACKUP_TIMEOUT_SECONDS', 300),
                redact=[self.password, quote(self.password, safe='') if self.password else None],
                filter_stderr='Warning: Using a password'
            )

            size = os.path.getsize(file_path) if os.path.exists(file_path) else 0
            if size == 0:
                self.log.error("Backup failed: RDB file is empty")
                raise ExecutionError("Redis backup failed: RDB file is empty", returncode=0,
                                     execution_log=str(self.log))
        except ExecutionError:
            if os.path.exists(file_path):
                os.remove(file_path)
            raise

        self.log.log(f"RDB dump completed successfully ({size} bytes)")

        result = self._compress(file_path)
        result.metadata = {
            'host': self.host,
            'port': self.port,
            'database': self.database,
            'format': 'rdb',
            'compressed': True,
            'tls': self.tls,
        }
        result.execution_log = str(self.log)
        return result


class ObjectStorageSource(BackupSource):
    """
    Copies objects from a source bucket/prefix to each destination.

    There is no single artifact: ``sync`` runs once per destination.
    - s3 destination: objects land under [dest_prefix/]<timestamp>/<relative path>
    - local destination: files land under <path>/s3-copy_<bucket>_<timestamp>/
    """

    source_type = 's3'
    required_fields = ('bucket',)
    produces_artifact = False

    def validate(self):
        super().validate()
        self.bucket = self.config['bucket']
        self.prefix = (self.config.get('prefix') or '').strip().rstrip('/')

    @property
    def artifact_identifier(self) -> str:
        return self.bucket

    def artifact_stem(self) -> str:
        return f"s3-copy_{self.bucket}_"

    def _source_storage(self) -> S3Storage:
        credentials = self.config.get('credentials')
        if credentials is None:
            raise ConfigurationError("S3 source credentials were not resolved")
        return S3Storage(credentials, self.bucket, self.prefix)

    @property
    def folder_prefix(self) -> str:
        """The prefix as a folder, so 'data' does not list 'database/...'."""
        return f"{self.prefix}/" if self.prefix else ''

    def _relative_path(self, key: str) -> str:
        if self.folder_prefix and key.startswith(self.folder_prefix):
            key = key[len(self.folder_prefix):]
        return key.lstrip('/')

    def _local_target(self, sync_dir: Path, key: str) -> Path:
        """
        Download path of an object inside ``sync_dir``.

        Raises:
            StorageError: If the key would resolve outside ``sync_dir``
        """
        base = sync_dir.resolve()
        target = (base / self._relative_path(key)).resolve()
        if target == base or base not in target.parents:
            raise StorageError(f"Object key {key!r} resolves outside {sync_dir}")
        return target

    def backup(self, work_dir: str) -> BackupResult:
        raise ConfigurationError("S3 source jobs copy directly to each destination")

    def sync(self, destination_type: str, destination_config: Dict[str, Any], work_dir: str,
             log: Optional[ExecutionLog] = None, now: Optional[datetime] = None) -> BackupResult:
        """
        Copy every object under the source prefix to one destination.

        Args:
            destination_type: 's3' or 'local'
            destination_config: Resolved destination config (with credentials for s3)
            work_dir: Scratch directory for S3-to-S3 transfers
            log: Execution log to write to (default: a fresh one)

        Raises:
            ConfigurationError: Unsupported destination type
            StorageError: Listing, download or upload failed
        """
        log = log or ExecutionLog(logger)
        now = now or datetime.now(timezone.utc)

        try:
            if destination_type == 's3':
                return self._sync_to_s3(destination_config, work_dir, log, now)
            if destination_type == 'local':
                return self._sync_to_local(destination_config, log, now)
            raise ConfigurationError(f"Unsupported destination type for S3 backup: {destination_type}")
        except BackupError as e:
            log.error(f"Sync failed: {e}")
            raise e.with_log(str(log))

    def _sync_to_s3(self, destination_config, work_dir, log: ExecutionLog, now: datetime) -> BackupResult:
        source = self._source_storage()
        target = S3Storage(destination_config['credentials'], destination_config['bucket'],
                           destination_config.get('prefix'))
        # e.g. 2025-12-06T10-30-00
        folder = now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S')
        scratch_dir = Path(work_dir) / f"s3-copy-{folder}"
        scratch_dir.mkdir(parents=True, exist_ok=True)

        log.log("Starting S3 to S3 sync")
        log.log(f"Source: s3://{self.bucket}/{self.prefix}")
        log.log(f"Destination: s3://{target.bucket_name}/{target.prefix}")

        files = []
        total_size = 0
        try:
            for obj in source.list_objects(prefix=self.folder_prefix):
                relative_path = self._relative_path(obj['Key'])
                temp_path = scratch_dir / f"{len(files)}_{os.path.basename(obj['Key'])}"
                size = source.download(obj['Key'], str(temp_path))
                dest_key = target.upload(str(temp_path), target.key_for(f"{folder}/{relative_path}"))
                temp_path.unlink()

                files.append({'key': dest_key, 'size': size})
                total_size += size
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

        log.log(f"Sync completed: {len(files)} files, {total_size} bytes")

        return BackupResult(
            file_path=target.uri_for(build_object_key(target.prefix, folder)),
            file_size=total_size,
            metadata={
                'source_bucket': self.bucket,
                'source_prefix': self.prefix,
                'dest_bucket': target.bucket_name,
                'dest_prefix': target.prefix,
                'files_copied': len(files),
                'files': files,
            },
            execution_log=str(log)
        )

    def _sync_to_local(self, destination_config, log: ExecutionLog, now: datetime) -> BackupResult:
        source = self._source_storage()
        base_path = destination_config.get('path')
        if not base_path:
            raise ConfigurationError("Local destination has no path configured")

        sync_dir = Path(base_path) / f"s3-copy_{self.bucket}_{artifact_timestamp(now)}"
        sync_dir.mkdir(parents=True, exist_ok=True)

        log.log("Starting S3 to local sync")
        log.log(f"Source: s3://{self.bucket}/{self.prefix}")
        log.log(f"Destination: {sync_dir}")

        files = []
        total_size = 0
        for obj in source.list_objects(prefix=self.folder_prefix):
            target = self._local_target(sync_dir, obj['Key'])
            relative_path = target.relative_to(sync_dir.resolve()).as_posix()
            size = source.download(obj['Key'], str(target))
            files.append({'key': relative_path, 'size': size})
            total_size += size

        log.log(f"Sync completed: {len(files)} files, {total_size} bytes")

        return BackupResult(
            file_path=str(sync_dir),
            file_size=total_size,
            metadata={
                'source_bucket': self.bucket,
                'source_prefix': self.prefix,
                'dest_path': str(sync_dir),
                'files_copied': len(files),
                'files': files,
            },
            execution_log=str(log)
        )


SOURCE_CLASSES = {
    'postgres': PostgresSource,
    'mysql': MySQLSource,
    'mongodb': MongoDBSource,
    'redis': RedisSource,
    's3': ObjectStorageSource,
}


def create_source(source_type: str, config: Dict[str, Any], settings: Optional[Mapping] = None) -> BackupSource:
    """
    Factory function to create the strategy for a source type.

    Args:
        source_type: One of postgres, mysql, mongodb, redis, s3
        config: Decrypted source configuration
        settings: Application config (timeouts, pg_dump versions)

    Raises:
        ConfigurationError: Unknown type or invalid config
    """
    source_class = SOURCE_CLASSES.get(source_type)
    if source_class is None:
        raise ConfigurationError(f"Unsupported backup type: {source_type}")
    return source_class(config or {}, settings)
