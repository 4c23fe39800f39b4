"""
Per-tenant SQLite database for StreamDB.

One SQLite file per tenant holds every collection of that tenant:

    streams:
        - tenant_id TEXT
        - stream_id TEXT
        - parent_id TEXT (NULL for roots)
        - name TEXT
        - trashed INTEGER (0/1)
        - created, modified INTEGER (Unix ms)
        - created_by, modified_by TEXT
        - PRIMARY KEY (tenant_id, stream_id)

    stream_deletions:
        - tenant_id TEXT
        - stream_id TEXT
        - deleted_at INTEGER (Unix ms)
        - PRIMARY KEY (tenant_id, stream_id)

    events:
        - tenant_id TEXT
        - event_id TEXT
        - head_id TEXT (set on history versions only)
        - stream_ids TEXT (JSON array, ordered, first = primary stream)
        - type, content_json, time, description, tags_json, attachments_json
        - trashed INTEGER
        - created, created_by, modified, modified_by
        - deleted INTEGER (Unix ms, set on deletion tombstones)
        - PRIMARY KEY (tenant_id, event_id)

Invariants:
    - Each collection method runs in its own transaction; nothing spans
      streams and events, so multi-step callers must be idempotent
    - Every statement filters on tenant_id

How to change safely:
    - Schema migrations must be backward compatible
    - Keep stream_ids a JSON array so json_each() filters keep working
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class TenantNotFoundError(Exception):
    """Tenant database does not exist."""

    pass


def now_ms() -> int:
    return int(time.time() * 1000)


class TenantDatabase:
    """Connection factory and schema owner for per-tenant SQLite files.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> db = TenantDatabase("/var/lib/streamdb")
        >>> await db.initialize_tenant("tenant_123")
        >>> streams = StreamStore(db)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the tenant database factory.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._lock = asyncio.Lock()

    def _get_db_path(self, tenant_id: str) -> Path:
        # Sanitize tenant_id to prevent path traversal
        safe_id = "".join(c for c in tenant_id if c.isalnum() or c in "-_")
        return self.data_dir / f"tenant_{safe_id}.db"

    @contextmanager
    def connect(self, tenant_id: str, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection for a tenant.

        Args:
            tenant_id: Tenant identifier
            create: Whether to create database if not exists

        Yields:
            SQLite connection (autocommit; callers issue BEGIN IMMEDIATE)

        Raises:
            TenantNotFoundError: If database doesn't exist and create=False
        """
        db_path = self._get_db_path(tenant_id)

        if not create and not db_path.exists():
            raise TenantNotFoundError(f"Tenant database not found: {tenant_id}")

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, tenant_id: str) -> Iterator[sqlite3.Connection]:
        """Connection wrapped in a single immediate transaction."""
        with self.connect(tenant_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS streams (
                tenant_id TEXT NOT NULL,
                stream_id TEXT NOT NULL,
                parent_id TEXT,
                name TEXT NOT NULL,
                trashed INTEGER NOT NULL DEFAULT 0,
                created INTEGER NOT NULL,
                created_by TEXT NOT NULL,
                modified INTEGER NOT NULL,
                modified_by TEXT NOT NULL,
                PRIMARY KEY (tenant_id, stream_id)
            );

            CREATE INDEX IF NOT EXISTS idx_streams_parent ON streams(tenant_id, parent_id);

            CREATE TABLE IF NOT EXISTS stream_deletions (
                tenant_id TEXT NOT NULL,
                stream_id TEXT NOT NULL,
                deleted_at INTEGER NOT NULL,
                PRIMARY KEY (tenant_id, stream_id)
            );

            CREATE TABLE IF NOT EXISTS events (
                tenant_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                head_id TEXT,
                stream_ids TEXT NOT NULL DEFAULT '[]',
                type TEXT,
                content_json TEXT,
                time INTEGER,
                description TEXT,
                tags_json TEXT,
                attachments_json TEXT,
                trashed INTEGER NOT NULL DEFAULT 0,
                created INTEGER,
                created_by TEXT,
                modified INTEGER,
                modified_by TEXT,
                deleted INTEGER,
                PRIMARY KEY (tenant_id, event_id)
            );

            CREATE INDEX IF NOT EXISTS idx_events_head ON events(tenant_id, head_id);
            CREATE INDEX IF NOT EXISTS idx_events_deleted ON events(tenant_id, deleted);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize_tenant(self, tenant_id: str) -> None:
        """Create the database file and schema if they don't exist.

        Args:
            tenant_id: Tenant identifier
        """
        async with self._lock:
            with self.connect(tenant_id, create=True) as conn:
                self._create_schema(conn)
                logger.info(f"Initialized tenant database: {tenant_id}")

    async def tenant_exists(self, tenant_id: str) -> bool:
        """Check if tenant database exists."""
        return self._get_db_path(tenant_id).exists()

    def get_db_path(self, tenant_id: str) -> Path:
        return self._get_db_path(tenant_id)
