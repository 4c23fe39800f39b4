"""
Configuration management for StreamDB Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Audit settings are immutable once loaded and are passed explicitly
      to the deletion engine (never read from process state mid-request)

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - A new deletion mode needs a matching branch in RetentionPolicy
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class DeletionMode(Enum):
    """How much audit history survives a hard delete."""

    KEEP_EVERYTHING = "keep-everything"
    KEEP_AUTHORS = "keep-authors"
    KEEP_NOTHING = "keep-nothing"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite databases
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
        scan_batch_size: Rows fetched per batch by streamed event scans
    """

    data_dir: str = "/var/lib/streamdb"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB
    scan_batch_size: int = 500

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/streamdb"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            scan_batch_size=int(os.getenv("SCAN_BATCH_SIZE", "500")),
        )


@dataclass(frozen=True)
class AuditConfig:
    """Tenant audit (versioning) settings.

    Attributes:
        deletion_mode: What survives a hard delete of events
        force_keep_history: Write a history version before merging events
    """

    deletion_mode: DeletionMode = DeletionMode.KEEP_NOTHING
    force_keep_history: bool = False

    @classmethod
    def from_env(cls) -> AuditConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If AUDIT_DELETION_MODE is not a known mode.
        """
        mode_str = os.getenv("AUDIT_DELETION_MODE", DeletionMode.KEEP_NOTHING.value).lower()
        try:
            deletion_mode = DeletionMode(mode_str)
        except ValueError:
            allowed = ", ".join(m.value for m in DeletionMode)
            raise ValueError(f"Invalid AUDIT_DELETION_MODE '{mode_str}'. Must be one of: {allowed}")

        return cls(
            deletion_mode=deletion_mode,
            force_keep_history=os.getenv("AUDIT_FORCE_KEEP_HISTORY", "false").lower() == "true",
        )


@dataclass(frozen=True)
class AttachmentConfig:
    """Attachment file storage configuration.

    Attributes:
        attachments_dir: Root directory for attachment files
            (defaults to ``<data_dir>/attachments``)
    """

    attachments_dir: str | None = None

    @classmethod
    def from_env(cls) -> AttachmentConfig:
        """Load configuration from environment variables."""
        return cls(attachments_dir=os.getenv("ATTACHMENTS_DIR"))

    def resolve_dir(self, data_dir: str) -> str:
        return self.attachments_dir or os.path.join(data_dir, "attachments")


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

    Attributes:
        storage: Local storage configuration
        audit: Audit/retention settings
        attachments: Attachment storage configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    attachments: AttachmentConfig = field(default_factory=AttachmentConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            audit=AuditConfig.from_env(),
            attachments=AttachmentConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    @property
    def attachments_dir(self) -> str:
        return self.attachments.resolve_dir(self.storage.data_dir)

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.storage.data_dir:
            raise ValueError("DATA_DIR must not be empty")
        if self.storage.scan_batch_size <= 0:
            raise ValueError("SCAN_BATCH_SIZE must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "attachments_dir": self.attachments_dir,
                "deletion_mode": self.audit.deletion_mode.value,
                "force_keep_history": self.audit.force_keep_history,
                "log_level": self.observability.log_level,
            },
        )
