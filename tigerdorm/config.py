"""
Configuration management for TigerDorm.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit database path

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep environment variable names stable
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """SQLite storage configuration.

    Attributes:
        db_path: Path of the SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    db_path: str = "/var/lib/tigerdorm/tigerdorm.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -16000  # 16MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("TIGERDORM_DB_PATH", "/var/lib/tigerdorm/tigerdorm.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-16000")),
        )


@dataclass(frozen=True)
class GeofenceDefaults:
    """Defaults applied to new geofences.

    Attributes:
        radius_meters: Radius when the caller supplies none
        hysteresis_meters: Hysteresis margin when the caller supplies none
    """

    radius_meters: int = 50
    hysteresis_meters: int = 10

    @classmethod
    def from_env(cls) -> GeofenceDefaults:
        """Load configuration from environment variables."""
        return cls(
            radius_meters=int(os.getenv("GEOFENCE_DEFAULT_RADIUS_M", "50")),
            hysteresis_meters=int(os.getenv("GEOFENCE_DEFAULT_HYSTERESIS_M", "10")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Change feed configuration.

    Attributes:
        history_size: Number of recent events retained for inspection
        queue_size: Per-subscription queue bound (0 = unbounded)
    """

    history_size: int = 1000
    queue_size: int = 0

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        return cls(
            history_size=int(os.getenv("FEED_HISTORY_SIZE", "1000")),
            queue_size=int(os.getenv("FEED_QUEUE_SIZE", "0")),
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
    """Complete configuration.

    Attributes:
        storage: SQLite storage configuration
        geofence_defaults: Defaults for new geofences
        feed: Change feed configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    geofence_defaults: GeofenceDefaults = field(default_factory=GeofenceDefaults)
    feed: FeedConfig = field(default_factory=FeedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            geofence_defaults=GeofenceDefaults.from_env(),
            feed=FeedConfig.from_env(),
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
            raise ValueError("TIGERDORM_DB_PATH must not be empty")
        if self.geofence_defaults.radius_meters <= 0:
            raise ValueError("GEOFENCE_DEFAULT_RADIUS_M must be positive")
        if self.geofence_defaults.hysteresis_meters < 0:
            raise ValueError("GEOFENCE_DEFAULT_HYSTERESIS_M must not be negative")
        if self.feed.history_size < 0 or self.feed.queue_size < 0:
            raise ValueError("FEED_HISTORY_SIZE and FEED_QUEUE_SIZE must not be negative")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        db_dir = os.path.dirname(self.storage.db_path)
        if db_dir and not os.path.exists(db_dir):
            logger.warning(
                f"Database directory does not exist: {db_dir}. "
                "It will be created on first connection."
            )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "wal_mode": self.storage.wal_mode,
                "default_radius_m": self.geofence_defaults.radius_meters,
                "default_hysteresis_m": self.geofence_defaults.hysteresis_meters,
                "feed_history_size": self.feed.history_size,
                "log_level": self.observability.log_level,
            },
        )
