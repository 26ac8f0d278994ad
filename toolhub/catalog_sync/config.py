"""
Configuration management for the catalog sync service.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The lease TTL always exceeds the worst-case duration of one sync cycle
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep validate() in sync with any new timeout that lengthens a cycle
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class RemoteBackend(Enum):
    """Supported remote object store backends."""

    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the shared catalog, lease and backups.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO/LocalStack)
        catalog_key: Key of the shared catalog document
        lock_key: Key of the lease object
        backup_prefix: Prefix for local store backups
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        connect_timeout: Connect timeout per request in seconds
        read_timeout: Read timeout per request in seconds
        max_attempts: Botocore retry attempts per request
    """

    bucket: str = "toolhub-catalog"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    catalog_key: str = "catalog/catalog.json.gz"
    lock_key: str = "locks/catalog.lease"
    backup_prefix: str = "backups"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    connect_timeout: float = 5.0
    read_timeout: float = 20.0
    max_attempts: int = 3

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "toolhub-catalog"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            catalog_key=os.getenv("S3_CATALOG_KEY", "catalog/catalog.json.gz"),
            lock_key=os.getenv("S3_LOCK_KEY", "locks/catalog.lease"),
            backup_prefix=os.getenv("S3_BACKUP_PREFIX", "backups"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            connect_timeout=float(os.getenv("S3_CONNECT_TIMEOUT", "5")),
            read_timeout=float(os.getenv("S3_READ_TIMEOUT", "20")),
            max_attempts=int(os.getenv("S3_MAX_ATTEMPTS", "3")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_filename: Catalog database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/toolhub"
    db_filename: str = "catalog.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/toolhub"),
            db_filename=os.getenv("CATALOG_DB_FILENAME", "catalog.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class LockConfig:
    """Lease configuration.

    Attributes:
        lease_ttl_seconds: Lease validity; must outlast one full sync cycle
        safety_margin_seconds: Margin added on top of the network budget
    """

    lease_ttl_seconds: float = 120.0
    safety_margin_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> LockConfig:
        """Load configuration from environment variables."""
        return cls(
            lease_ttl_seconds=float(os.getenv("LEASE_TTL_SECONDS", "120")),
            safety_margin_seconds=float(os.getenv("LEASE_SAFETY_MARGIN_SECONDS", "30")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Synchronizer loop configuration.

    Attributes:
        enabled: Whether the periodic loop runs
        interval_seconds: Interval between scheduled cycles
        retry_delay_seconds: Delay before the next cycle after a retryable failure
        conflict_policy: Tie-break for double writes (remote_wins, local_wins, newest_wins)
        run_on_start: Run one cycle immediately at startup
    """

    enabled: bool = True
    interval_seconds: float = 60.0
    retry_delay_seconds: float = 10.0
    conflict_policy: str = "remote_wins"
    run_on_start: bool = True

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("SYNC_ENABLED", "true").lower() == "true",
            interval_seconds=float(os.getenv("SYNC_INTERVAL_SECONDS", "60")),
            retry_delay_seconds=float(os.getenv("SYNC_RETRY_DELAY_SECONDS", "10")),
            conflict_policy=os.getenv("SYNC_CONFLICT_POLICY", "remote_wins").lower(),
            run_on_start=os.getenv("SYNC_RUN_ON_START", "true").lower() == "true",
        )


@dataclass(frozen=True)
class BackupConfig:
    """Backup configuration.

    Attributes:
        retention: Number of restorable snapshots kept per instance (oldest pruned first)
        forensic_retention: Number of pre_restore/pre_rebuild copies kept per instance
        compression: Compression algorithm (gzip, none)
    """

    retention: int = 5
    forensic_retention: int = 2
    compression: str = "gzip"

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            retention=int(os.getenv("BACKUP_RETENTION", "5")),
            forensic_retention=int(os.getenv("BACKUP_FORENSIC_RETENTION", "2")),
            compression=os.getenv("BACKUP_COMPRESSION", "gzip"),
        )


@dataclass(frozen=True)
class SeedConfig:
    """Seed definitions used as the last-resort rebuild source.

    Attributes:
        seed_path: Path to the YAML seed file (optional)
    """

    seed_path: str | None = None

    @classmethod
    def from_env(cls) -> SeedConfig:
        """Load configuration from environment variables."""
        return cls(seed_path=os.getenv("CATALOG_SEED_PATH"))


@dataclass(frozen=True)
class HttpConfig:
    """Status HTTP server configuration.

    Attributes:
        enabled: Whether the status endpoint is served
        host: Bind host
        port: Bind port
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("HTTP_ENABLED", "true").lower() == "true",
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


def default_instance_id() -> str:
    """Instance identifier used as lease owner when INSTANCE_ID is unset."""
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class ServerConfig:
    """Complete service configuration.

    Attributes:
        instance_id: Identifier of this instance (lease owner id, backup prefix)
        remote_backend: Which object store backend to use
        s3: S3 configuration
        storage: Local storage configuration
        lock: Lease configuration
        sync: Synchronizer configuration
        backup: Backup configuration
        seed: Seed configuration
        http: Status HTTP configuration
        observability: Logging configuration
    """

    instance_id: str = field(default_factory=default_instance_id)
    remote_backend: RemoteBackend = RemoteBackend.S3
    s3: S3Config = field(default_factory=S3Config)
    storage: StorageConfig = field(default_factory=StorageConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    seed: SeedConfig = field(default_factory=SeedConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("REMOTE_BACKEND", "s3").lower()
        try:
            remote_backend = RemoteBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid REMOTE_BACKEND '{backend_str}'. Must be one of: s3, memory")

        config = cls(
            instance_id=os.getenv("INSTANCE_ID") or default_instance_id(),
            remote_backend=remote_backend,
            s3=S3Config.from_env(),
            storage=StorageConfig.from_env(),
            lock=LockConfig.from_env(),
            sync=SyncConfig.from_env(),
            backup=BackupConfig.from_env(),
            seed=SeedConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    @property
    def db_path(self) -> str:
        """Full path of the local catalog database."""
        return os.path.join(self.storage.data_dir, self.storage.db_filename)

    @property
    def min_lease_ttl_seconds(self) -> float:
        """Smallest lease TTL that covers download + merge + upload."""
        per_request = self.s3.connect_timeout + self.s3.read_timeout
        return 2 * per_request + self.lock.safety_margin_seconds

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.instance_id:
            raise ValueError("INSTANCE_ID must not be empty")

        if self.remote_backend == RemoteBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when REMOTE_BACKEND=s3")

        if self.lock.lease_ttl_seconds < self.min_lease_ttl_seconds:
            raise ValueError(
                f"LEASE_TTL_SECONDS={self.lock.lease_ttl_seconds} is shorter than one "
                f"worst-case sync cycle ({self.min_lease_ttl_seconds}s)"
            )

        if self.sync.interval_seconds <= 0:
            raise ValueError("SYNC_INTERVAL_SECONDS must be positive")

        if self.sync.conflict_policy not in ("remote_wins", "local_wins", "newest_wins"):
            raise ValueError(
                f"Invalid SYNC_CONFLICT_POLICY '{self.sync.conflict_policy}'. "
                "Must be one of: remote_wins, local_wins, newest_wins"
            )

        if self.backup.retention < 1:
            raise ValueError("BACKUP_RETENTION must be at least 1")

        if self.backup.forensic_retention < 0:
            raise ValueError("BACKUP_FORENSIC_RETENTION must not be negative")

        if self.backup.compression not in ("gzip", "none"):
            raise ValueError("BACKUP_COMPRESSION must be gzip or none")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "instance_id": self.instance_id,
                "remote_backend": self.remote_backend.value,
                "s3_bucket": self.s3.bucket if self.remote_backend == RemoteBackend.S3 else None,
                "catalog_key": self.s3.catalog_key,
                "data_dir": self.storage.data_dir,
                "lease_ttl_seconds": self.lock.lease_ttl_seconds,
                "sync_interval_seconds": self.sync.interval_seconds,
                "conflict_policy": self.sync.conflict_policy,
                "backup_retention": self.backup.retention,
                "log_level": self.observability.log_level,
            },
        )
