"""
Stream collection for StreamDB.

Streams are the hierarchical categories events attach to. Each tenant has
a forest of streams linked through parent_id.

Invariants:
    - parent_id is NULL (root) or references an existing stream of the tenant
    - A stream is never its own parent
    - Deleting streams leaves a tombstone per removed id so that clients can
      sync deletions (find_deletions)
    - delete_streams is idempotent: already-absent ids are skipped

How to change safely:
    - Keep delete_streams a single transaction
    - New stream fields need a default for existing rows
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from ..errors import InvalidOperationError, NotFoundError
from .database import TenantDatabase, now_ms

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "parent_id", "trashed")


@dataclass
class Stream:
    """A stream (tree node).

    Attributes:
        id: Stream identifier, unique per tenant
        parent_id: Parent stream id, None for roots
        name: Display name
        trashed: Soft-deleted flag
        created: Creation timestamp (Unix ms)
        created_by: Actor who created the stream
        modified: Last update timestamp (Unix ms)
        modified_by: Actor who last updated the stream
    """

    id: str
    parent_id: str | None
    name: str
    trashed: bool = False
    created: int = 0
    created_by: str = ""
    modified: int = 0
    modified_by: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "parentId": self.parent_id,
            "name": self.name,
            "created": self.created,
            "createdBy": self.created_by,
            "modified": self.modified,
            "modifiedBy": self.modified_by,
        }
        if self.trashed:
            data["trashed"] = True
        return data


@dataclass
class StreamDeletion:
    """Tombstone of a hard-deleted stream."""

    id: str
    deleted: int


def _row_to_stream(row: sqlite3.Row) -> Stream:
    return Stream(
        id=row["stream_id"],
        parent_id=row["parent_id"],
        name=row["name"],
        trashed=bool(row["trashed"]),
        created=row["created"],
        created_by=row["created_by"],
        modified=row["modified"],
        modified_by=row["modified_by"],
    )


class StreamStore:
    """Stream CRUD on the tenant database.

    Example:
        >>> streams = StreamStore(db)
        >>> work = await streams.create_stream("t1", name="Work", stream_id="work")
        >>> await streams.update_stream("t1", "work", {"trashed": True}, actor="user:1")
    """

    def __init__(self, db: TenantDatabase) -> None:
        self.db = db

    async def create_stream(
        self,
        tenant_id: str,
        name: str,
        stream_id: str | None = None,
        parent_id: str | None = None,
        actor: str = "system",
        created_at: int | None = None,
    ) -> Stream:
        """Create a stream.

        Args:
            tenant_id: Tenant identifier
            name: Stream name
            stream_id: Optional specific id (generated if not provided)
            parent_id: Parent stream id (None for a root stream)
            actor: Actor creating the stream
            created_at: Optional creation timestamp

        Returns:
            Created Stream

        Raises:
            NotFoundError: If parent_id does not exist
            InvalidOperationError: If the id is already taken
        """
        if stream_id is None:
            stream_id = str(uuid.uuid4())
        now = created_at or now_ms()

        with self.db.transaction(tenant_id) as conn:
            if parent_id is not None and not self._exists(conn, tenant_id, parent_id):
                raise NotFoundError("parent stream", parent_id)
            if self._exists(conn, tenant_id, stream_id):
                raise InvalidOperationError(
                    f"A stream with id '{stream_id}' already exists", stream_id=stream_id
                )
            conn.execute(
                """
                INSERT INTO streams (tenant_id, stream_id, parent_id, name, trashed,
                                     created, created_by, modified, modified_by)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (tenant_id, stream_id, parent_id, name, now, actor, now, actor),
            )

        logger.debug(
            "Created stream",
            extra={"tenant_id": tenant_id, "stream_id": stream_id, "parent_id": parent_id},
        )

        return Stream(
            id=stream_id,
            parent_id=parent_id,
            name=name,
            created=now,
            created_by=actor,
            modified=now,
            modified_by=actor,
        )

    def _exists(self, conn: sqlite3.Connection, tenant_id: str, stream_id: str) -> bool:
        cursor = conn.execute(
            "SELECT 1 FROM streams WHERE tenant_id = ? AND stream_id = ?",
            (tenant_id, stream_id),
        )
        return cursor.fetchone() is not None

    async def get_stream(self, tenant_id: str, stream_id: str) -> Stream | None:
        """Get a stream by id (trashed streams included)."""
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                "SELECT * FROM streams WHERE tenant_id = ? AND stream_id = ?",
                (tenant_id, stream_id),
            )
            row = cursor.fetchone()
            return _row_to_stream(row) if row else None

    async def find_streams(self, tenant_id: str) -> list[Stream]:
        """All streams of the tenant as a flat list, in creation order."""
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                "SELECT * FROM streams WHERE tenant_id = ? ORDER BY rowid",
                (tenant_id,),
            )
            return [_row_to_stream(row) for row in cursor.fetchall()]

    async def update_stream(
        self,
        tenant_id: str,
        stream_id: str,
        patch: dict[str, Any],
        actor: str = "system",
        updated_at: int | None = None,
    ) -> Stream | None:
        """Update a stream with PATCH semantics.

        Args:
            tenant_id: Tenant identifier
            stream_id: Stream identifier
            patch: Subset of name, parent_id, trashed
            actor: Actor performing the update (tracking fields)
            updated_at: Optional update timestamp

        Returns:
            Updated Stream or None if not found

        Raises:
            InvalidOperationError: Unknown field, or stream made its own parent
            NotFoundError: If the new parent does not exist
        """
        unknown = set(patch) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidOperationError(
                f"Cannot update stream fields: {sorted(unknown)}", stream_id=stream_id
            )
        if "parent_id" in patch and patch["parent_id"] == stream_id:
            raise InvalidOperationError(
                'The provided "parentId" is the same as the stream\'s "id".',
                stream_id=stream_id,
            )

        now = updated_at or now_ms()

        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(
                "SELECT * FROM streams WHERE tenant_id = ? AND stream_id = ?",
                (tenant_id, stream_id),
            )
            row = cursor.fetchone()
            if not row:
                return None

            stream = _row_to_stream(row)
            new_parent = patch.get("parent_id", stream.parent_id)
            if new_parent is not None and not self._exists(conn, tenant_id, new_parent):
                raise NotFoundError("parent stream", new_parent)

            stream.name = patch.get("name", stream.name)
            stream.parent_id = new_parent
            stream.trashed = bool(patch.get("trashed", stream.trashed))
            stream.modified = now
            stream.modified_by = actor

            conn.execute(
                """
                UPDATE streams SET name = ?, parent_id = ?, trashed = ?,
                                   modified = ?, modified_by = ?
                WHERE tenant_id = ? AND stream_id = ?
                """,
                (
                    stream.name,
                    stream.parent_id,
                    int(stream.trashed),
                    now,
                    actor,
                    tenant_id,
                    stream_id,
                ),
            )

        return stream

    async def delete_streams(self, tenant_id: str, stream_ids: list[str]) -> int:
        """Remove streams in one bulk transaction and record tombstones.

        Ids that are already absent are ignored, so re-running the same
        deletion is a no-op.

        Args:
            tenant_id: Tenant identifier
            stream_ids: Ids to remove

        Returns:
            Number of stream rows removed
        """
        if not stream_ids:
            return 0

        now = now_ms()
        placeholders = ",".join("?" * len(stream_ids))

        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(
                f"SELECT stream_id FROM streams WHERE tenant_id = ? AND stream_id IN ({placeholders})",
                (tenant_id, *stream_ids),
            )
            present = [row["stream_id"] for row in cursor.fetchall()]

            conn.execute(
                f"DELETE FROM streams WHERE tenant_id = ? AND stream_id IN ({placeholders})",
                (tenant_id, *stream_ids),
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO stream_deletions (tenant_id, stream_id, deleted_at)
                VALUES (?, ?, ?)
                """,
                [(tenant_id, stream_id, now) for stream_id in present],
            )

        return len(present)

    async def find_deletions(self, tenant_id: str, since_ms: int = 0) -> list[StreamDeletion]:
        """Stream tombstones deleted at or after ``since_ms``, newest first."""
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                """
                SELECT stream_id, deleted_at FROM stream_deletions
                WHERE tenant_id = ? AND deleted_at >= ?
                ORDER BY deleted_at DESC
                """,
                (tenant_id, since_ms),
            )
            return [
                StreamDeletion(id=row["stream_id"], deleted=row["deleted_at"])
                for row in cursor.fetchall()
            ]
