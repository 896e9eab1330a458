"""
Configuration management for GridSync Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - TTLs and intervals are always positive
    - Secrets (API_KEY) are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable; clients and deploy scripts rely on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        db_path: Path of the single SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    db_path: str = "./data/gridsync.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "./data/gridsync.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP transport configuration.

    Attributes:
        host: Bind host
        port: Bind port
        cors_origins: Allowed CORS origins ("*" allows any)
        api_key: Optional shared key required in X-Api-Key
        long_poll_max_ms: Upper bound for a single long-poll wait
        stream_heartbeat_seconds: Interval between SSE keep-alive comments
    """

    host: str = "0.0.0.0"
    port: int = 4000
    cors_origins: tuple[str, ...] = ("*",)
    api_key: str | None = None
    long_poll_max_ms: int = 30000
    stream_heartbeat_seconds: float = 25.0

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "4000")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            api_key=os.getenv("API_KEY") or None,
            long_poll_max_ms=int(os.getenv("LONG_POLL_MAX_MS", "30000")),
            stream_heartbeat_seconds=float(os.getenv("STREAM_HEARTBEAT_SECONDS", "25")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Row sync configuration.

    Attributes:
        default_key_column: Key column used when a table is created without a hint
        subscriber_queue_size: Per-subscriber buffered change events
        audit_default_limit: Page size for audit reads without an explicit limit
    """

    default_key_column: str = "id"
    subscriber_queue_size: int = 1000
    audit_default_limit: int = 200

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            default_key_column=os.getenv("DEFAULT_KEY_COLUMN", "id"),
            subscriber_queue_size=int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "1000")),
            audit_default_limit=int(os.getenv("AUDIT_DEFAULT_LIMIT", "200")),
        )


@dataclass(frozen=True)
class CollabConfig:
    """Presence and advisory lock configuration.

    Attributes:
        presence_ttl_seconds: Presence entries older than this are not listed
        lock_ttl_seconds: Default lock TTL when a caller gives none
        reaper_interval_seconds: Interval of the background cleanup loop
        reap_ttl_multiple: Entries older than TTL * multiple are deleted
    """

    presence_ttl_seconds: float = 10.0
    lock_ttl_seconds: float = 10.0
    reaper_interval_seconds: float = 5.0
    reap_ttl_multiple: int = 3

    @classmethod
    def from_env(cls) -> CollabConfig:
        """Load configuration from environment variables."""
        return cls(
            presence_ttl_seconds=float(os.getenv("PRESENCE_TTL_SECONDS", "10")),
            lock_ttl_seconds=float(os.getenv("LOCK_TTL_SECONDS", "10")),
            reaper_interval_seconds=float(os.getenv("REAPER_INTERVAL_SECONDS", "5")),
            reap_ttl_multiple=int(os.getenv("REAP_TTL_MULTIPLE", "3")),
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


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: SQLite storage configuration
        http: HTTP transport configuration
        sync: Row sync configuration
        collab: Presence and lock configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    collab: CollabConfig = field(default_factory=CollabConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            sync=SyncConfig.from_env(),
            collab=CollabConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_path:
            raise ValueError("DB_PATH is required")
        if not self.sync.default_key_column:
            raise ValueError("DEFAULT_KEY_COLUMN must not be empty")
        if self.sync.subscriber_queue_size <= 0:
            raise ValueError("SUBSCRIBER_QUEUE_SIZE must be positive")
        if self.collab.presence_ttl_seconds <= 0 or self.collab.lock_ttl_seconds <= 0:
            raise ValueError("PRESENCE_TTL_SECONDS and LOCK_TTL_SECONDS must be positive")
        if self.collab.reaper_interval_seconds <= 0:
            raise ValueError("REAPER_INTERVAL_SECONDS must be positive")
        if self.collab.reap_ttl_multiple < 1:
            raise ValueError("REAP_TTL_MULTIPLE must be at least 1")
        if self.http.long_poll_max_ms <= 0:
            raise ValueError("LONG_POLL_MAX_MS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        db_dir = Path(self.storage.db_path).parent
        if not db_dir.exists():
            logger.warning(
                f"Database directory does not exist: {db_dir}. It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "api_key_set": self.http.api_key is not None,
                "default_key_column": self.sync.default_key_column,
                "presence_ttl_seconds": self.collab.presence_ttl_seconds,
                "lock_ttl_seconds": self.collab.lock_ttl_seconds,
                "log_level": self.observability.log_level,
            },
        )
