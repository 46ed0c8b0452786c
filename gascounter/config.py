"""
Configuration management for GasCounter.

Storage and snapshot settings are fixed application constants with
sensible defaults. Only observability settings can be overridden from
environment variables; database locations always come from the platform
directory APIs (see store/paths.py), never from the environment.

Invariants:
    - All settings have defaults that work on a fresh device
    - Configuration objects are immutable once built
    - validate() runs before any component is constructed

How to change safely:
    - Add new settings with defaults that keep existing installs working
    - Never rename db_filename or backup_dir_name: both are on-disk contracts
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class StorageConfig:
    """Local database configuration.

    Attributes:
        app_name: Directory name used under the platform data directories
        db_filename: Database file name inside the resolved directory
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    app_name: str = "GasCounterApp"
    db_filename: str = "gascounters.db3"
    busy_timeout_ms: int = 5000


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot (file backup) configuration.

    Attributes:
        backup_dir_name: Directory under app data holding snapshot files
        keep_count: Number of newest snapshots kept by retention
        settle_delay_ms: Wait after closing the store before copying the file
        interval_seconds: Periodic loop cadence and age at which a backup is due
        verify_before_restore: Run an integrity check on a snapshot before restoring it
    """

    backup_dir_name: str = "Backups"
    keep_count: int = 7
    settle_delay_ms: int = 100
    interval_seconds: int = 24 * 3600
    verify_before_restore: bool = True


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
            log_level=os.getenv("GASCOUNTER_LOG_LEVEL", "INFO"),
            log_format=os.getenv("GASCOUNTER_LOG_FORMAT", "json").lower(),
        )


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration.

    Attributes:
        storage: Database configuration
        snapshot: Snapshot configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration, applying environment overrides for logging.

        Returns:
            AppConfig with defaults plus observability overrides.

        Raises:
            ValueError: If the resulting configuration is invalid.
        """
        config = cls(observability=ObservabilityConfig.from_env())
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.db_filename:
            raise ValueError("db_filename must not be empty")
        if not self.snapshot.backup_dir_name:
            raise ValueError("backup_dir_name must not be empty")
        if self.snapshot.keep_count < 1:
            raise ValueError(f"keep_count must be positive, got {self.snapshot.keep_count}")
        if self.snapshot.settle_delay_ms < 0:
            raise ValueError(
                f"settle_delay_ms must not be negative, got {self.snapshot.settle_delay_ms}"
            )
        if self.snapshot.interval_seconds < 1:
            raise ValueError(
                f"interval_seconds must be positive, got {self.snapshot.interval_seconds}"
            )
        if self.observability.log_format not in LOG_FORMATS:
            raise ValueError(
                f"Invalid log format '{self.observability.log_format}'. "
                f"Must be one of: {', '.join(LOG_FORMATS)}"
            )

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "app_name": self.storage.app_name,
                "db_filename": self.storage.db_filename,
                "backup_dir_name": self.snapshot.backup_dir_name,
                "keep_count": self.snapshot.keep_count,
                "interval_seconds": self.snapshot.interval_seconds,
                "log_level": self.observability.log_level,
            },
        )
