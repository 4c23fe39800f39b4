"""
Event collection for StreamDB.

Events attach to one or more streams through an ordered ``stream_ids``
array whose first element is the event's primary stream. Rows with
``head_id`` set are history versions of the live event ``head_id`` points
at; rows with ``deleted`` set are deletion tombstones.

Invariants:
    - A live event has head_id NULL, deleted NULL and at least one stream id
    - Membership updates (prepend_stream_id, pull_stream_ids) only touch
      live events, never history rows
    - Every bulk update is idempotent: re-running it after a partial failure
      neither duplicates memberships nor fails on already-absent ids
    - Streamed scans page by event_id and hold no connection between batches

How to change safely:
    - New event fields must be cleared in _TOMBSTONE_CLEAR_FIELDS and
      _MINIMIZE_SQL if they carry content
    - Keep json_each() filters and stream_ids encoding in sync
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from ..config import DeletionMode
from ..errors import InvalidOperationError
from .database import TenantDatabase, now_ms

logger = logging.getLogger(__name__)

LIVE = "head_id IS NULL AND deleted IS NULL"

PATCHABLE_FIELDS = (
    "stream_ids",
    "type",
    "content",
    "time",
    "description",
    "tags",
    "attachments",
    "trashed",
)

_TOMBSTONE_CLEAR_FIELDS = (
    "type",
    "content_json",
    "time",
    "description",
    "tags_json",
    "attachments_json",
    "created",
    "created_by",
)

_MINIMIZE_SQL = """
    UPDATE events SET stream_ids = '[]', type = NULL, content_json = NULL, time = NULL,
                      description = NULL, tags_json = NULL, attachments_json = NULL,
                      trashed = 0, created = NULL, created_by = NULL
    WHERE tenant_id = ? AND head_id = ?
"""


def _any_in(stream_ids: list[str]) -> str:
    placeholders = ",".join("?" * len(stream_ids))
    return (
        "EXISTS (SELECT 1 FROM json_each(events.stream_ids) "
        f"WHERE json_each.value IN ({placeholders}))"
    )


@dataclass
class Event:
    """An event, a history version of one, or a deletion tombstone.

    Attributes:
        id: Event identifier
        stream_ids: Ordered stream memberships (first is primary)
        type: Event type (e.g. "note/txt")
        content: Event content (any JSON value)
        time: Event time (Unix ms)
        description: Free text
        tags: Tags
        attachments: Attachment descriptors ({"id", "file_name", "size"})
        trashed: Soft-deleted flag
        created: Creation timestamp (Unix ms)
        created_by: Creating actor
        modified: Last update timestamp (Unix ms)
        modified_by: Last updating actor
        head_id: Live event id, set on history versions only
        deleted: Deletion timestamp, set on tombstones only
    """

    id: str
    stream_ids: list[str] = field(default_factory=list)
    type: str | None = None
    content: Any = None
    time: int | None = None
    description: str | None = None
    tags: list[str] | None = None
    attachments: list[dict[str, Any]] | None = None
    trashed: bool = False
    created: int | None = None
    created_by: str | None = None
    modified: int | None = None
    modified_by: str | None = None
    head_id: str | None = None
    deleted: int | None = None

    @property
    def is_history(self) -> bool:
        return self.head_id is not None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "streamIds": list(self.stream_ids),
            "type": self.type,
            "content": self.content,
            "time": self.time,
            "description": self.description,
            "tags": self.tags,
            "attachments": self.attachments,
            "created": self.created,
            "createdBy": self.created_by,
            "modified": self.modified,
            "modifiedBy": self.modified_by,
            "headId": self.head_id,
            "deleted": self.deleted,
        }
        if self.trashed:
            data["trashed"] = True
        return {key: value for key, value in data.items() if value is not None}


def _loads(value: str | None) -> Any:
    return json.loads(value) if value is not None else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["event_id"],
        stream_ids=json.loads(row["stream_ids"]),
        type=row["type"],
        content=_loads(row["content_json"]),
        time=row["time"],
        description=row["description"],
        tags=_loads(row["tags_json"]),
        attachments=_loads(row["attachments_json"]),
        trashed=bool(row["trashed"]),
        created=row["created"],
        created_by=row["created_by"],
        modified=row["modified"],
        modified_by=row["modified_by"],
        head_id=row["head_id"],
        deleted=row["deleted"],
    )


class EventStore:
    """Event CRUD plus the bulk operations used by stream deletion.

    Example:
        >>> events = EventStore(db)
        >>> e = await events.create_event("t1", ["work"], type="note/txt", content="hi")
        >>> await events.pull_stream_ids("t1", ["work"])
    """

    def __init__(self, db: TenantDatabase, scan_batch_size: int = 500) -> None:
        self.db = db
        self.scan_batch_size = scan_batch_size

    def _insert(self, conn: sqlite3.Connection, tenant_id: str, event: Event) -> None:
        conn.execute(
            """
            INSERT INTO events (tenant_id, event_id, head_id, stream_ids, type, content_json,
                                time, description, tags_json, attachments_json, trashed,
                                created, created_by, modified, modified_by, deleted)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tenant_id,
                event.id,
                event.head_id,
                json.dumps(event.stream_ids),
                event.type,
                _dumps(event.content),
                event.time,
                event.description,
                _dumps(event.tags),
                _dumps(event.attachments),
                int(event.trashed),
                event.created,
                event.created_by,
                event.modified,
                event.modified_by,
                event.deleted,
            ),
        )

    async def create_event(
        self,
        tenant_id: str,
        stream_ids: list[str],
        type: str,
        content: Any = None,
        event_id: str | None = None,
        actor: str = "system",
        time: int | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        attachments: list[dict[str, Any]] | None = None,
        created_at: int | None = None,
    ) -> Event:
        """Create a live event.

        Raises:
            InvalidOperationError: If stream_ids is empty
        """
        if not stream_ids:
            raise InvalidOperationError("An event needs at least one stream id")

        now = created_at or now_ms()
        event = Event(
            id=event_id or str(uuid.uuid4()),
            stream_ids=list(dict.fromkeys(stream_ids)),
            type=type,
            content=content,
            time=time if time is not None else now,
            description=description,
            tags=tags,
            attachments=attachments,
            created=now,
            created_by=actor,
            modified=now,
            modified_by=actor,
        )

        with self.db.transaction(tenant_id) as conn:
            self._insert(conn, tenant_id, event)

        logger.debug(
            "Created event",
            extra={"tenant_id": tenant_id, "event_id": event.id, "stream_ids": event.stream_ids},
        )
        return event

    async def update_event(
        self,
        tenant_id: str,
        event_id: str,
        patch: dict[str, Any],
        actor: str = "system",
        keep_history: bool = False,
        updated_at: int | None = None,
    ) -> Event | None:
        """Update a live event with PATCH semantics.

        With ``keep_history`` the pre-update state is stored as a history
        version first (the normal update audit trail).

        Returns:
            Updated Event or None if no live event has this id
        """
        now = updated_at or now_ms()

        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(
                f"SELECT * FROM events WHERE tenant_id = ? AND event_id = ? AND {LIVE}",
                (tenant_id, event_id),
            )
            row = cursor.fetchone()
            if not row:
                return None

            event = _row_to_event(row)
            if keep_history:
                self._insert(conn, tenant_id, self._history_copy(event))

            for key, value in patch.items():
                if key not in PATCHABLE_FIELDS:
                    raise InvalidOperationError(f"Cannot update event field '{key}'")
                setattr(event, key, value)
            if not event.stream_ids:
                raise InvalidOperationError("An event needs at least one stream id")
            event.modified = now
            event.modified_by = actor

            conn.execute(
                "DELETE FROM events WHERE tenant_id = ? AND event_id = ?",
                (tenant_id, event_id),
            )
            self._insert(conn, tenant_id, event)

        return event

    async def get_event(self, tenant_id: str, event_id: str) -> Event | None:
        """Get a live event by id (history rows and tombstones excluded)."""
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                f"SELECT * FROM events WHERE tenant_id = ? AND event_id = ? AND {LIVE}",
                (tenant_id, event_id),
            )
            row = cursor.fetchone()
            return _row_to_event(row) if row else None

    async def find_history(self, tenant_id: str, head_id: str) -> list[Event]:
        """History versions of an event, oldest first."""
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                "SELECT * FROM events WHERE tenant_id = ? AND head_id = ? ORDER BY rowid",
                (tenant_id, head_id),
            )
            return [_row_to_event(row) for row in cursor.fetchall()]

    async def find_deletions(self, tenant_id: str, since_ms: int = 0) -> list[Event]:
        """Event tombstones deleted at or after ``since_ms``, newest first."""
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                """
                SELECT * FROM events
                WHERE tenant_id = ? AND head_id IS NULL AND deleted >= ?
                ORDER BY deleted DESC
                """,
                (tenant_id, since_ms),
            )
            return [_row_to_event(row) for row in cursor.fetchall()]

    async def has_events_in_streams(self, tenant_id: str, stream_ids: list[str]) -> bool:
        """Existence probe: does any live event reference one of the streams?"""
        if not stream_ids:
            return False
        with self.db.connect(tenant_id) as conn:
            cursor = conn.execute(
                f"SELECT 1 FROM events WHERE tenant_id = ? AND {LIVE} AND {_any_in(stream_ids)} LIMIT 1",
                (tenant_id, *stream_ids),
            )
            return cursor.fetchone() is not None

    def iter_events_in_streams(
        self,
        tenant_id: str,
        stream_ids: list[str],
        with_attachments: bool = False,
    ) -> Iterator[Event]:
        """Lazily yield live events referencing any of the streams.

        Pages through the collection by event_id in batches of
        ``scan_batch_size``. The sequence is finite and cannot be restarted;
        call again for a fresh scan.

        Args:
            tenant_id: Tenant identifier
            stream_ids: Streams to match (any membership)
            with_attachments: Only yield events that have attachments
        """
        if not stream_ids:
            return

        query = f"SELECT * FROM events WHERE tenant_id = ? AND {LIVE} AND {_any_in(stream_ids)}"
        if with_attachments:
            query += " AND attachments_json IS NOT NULL AND attachments_json != '[]'"
        query += " AND event_id > ? ORDER BY event_id LIMIT ?"

        last_id = ""
        while True:
            with self.db.connect(tenant_id) as conn:
                cursor = conn.execute(
                    query, (tenant_id, *stream_ids, last_id, self.scan_batch_size)
                )
                rows = cursor.fetchall()

            for row in rows:
                yield _row_to_event(row)

            if len(rows) < self.scan_batch_size:
                return
            last_id = rows[-1]["event_id"]

    @staticmethod
    def _history_copy(event: Event) -> Event:
        return Event(
            id=str(uuid.uuid4()),
            stream_ids=list(event.stream_ids),
            type=event.type,
            content=event.content,
            time=event.time,
            description=event.description,
            tags=event.tags,
            attachments=event.attachments,
            trashed=event.trashed,
            created=event.created,
            created_by=event.created_by,
            modified=event.modified,
            modified_by=event.modified_by,
            head_id=event.id,
        )

    async def insert_history_version(self, tenant_id: str, event: Event) -> bool:
        """Store a snapshot of a live event as a history version.

        Skipped when a version of the same head with the same ``modified``
        timestamp already exists, so a re-run does not duplicate snapshots.

        Returns:
            True if a version was written
        """
        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(
                "SELECT 1 FROM events WHERE tenant_id = ? AND head_id = ? AND modified IS ?",
                (tenant_id, event.id, event.modified),
            )
            if cursor.fetchone() is not None:
                return False
            self._insert(conn, tenant_id, self._history_copy(event))
        return True

    async def minimize_history(self, tenant_id: str, head_id: str) -> int:
        """Strip history versions down to author attribution.

        Versions keep id, head_id, modified and modified_by only.
        """
        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(_MINIMIZE_SQL, (tenant_id, head_id))
            return cursor.rowcount

    async def remove_history(self, tenant_id: str, head_id: str) -> int:
        """Delete every history version of an event."""
        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(
                "DELETE FROM events WHERE tenant_id = ? AND head_id = ?",
                (tenant_id, head_id),
            )
            return cursor.rowcount

    def _rewrite_memberships(
        self,
        conn: sqlite3.Connection,
        tenant_id: str,
        where: str,
        params: tuple,
        rewrite,
    ) -> int:
        cursor = conn.execute(
            f"SELECT event_id, stream_ids FROM events WHERE tenant_id = ? AND {LIVE} AND {where}",
            (tenant_id, *params),
        )
        updates = []
        for row in cursor.fetchall():
            current = json.loads(row["stream_ids"])
            new = rewrite(current)
            if new != current:
                updates.append((json.dumps(new), tenant_id, row["event_id"]))

        conn.executemany(
            "UPDATE events SET stream_ids = ? WHERE tenant_id = ? AND event_id = ?",
            updates,
        )
        return len(updates)

    async def prepend_stream_id(
        self, tenant_id: str, stream_ids: list[str], target_id: str
    ) -> int:
        """Add ``target_id`` as first membership of live events in the streams.

        Events already containing ``target_id`` are left alone.

        Returns:
            Number of events updated
        """
        if not stream_ids:
            return 0
        where = (
            f"{_any_in(stream_ids)} AND NOT EXISTS "
            "(SELECT 1 FROM json_each(events.stream_ids) WHERE json_each.value = ?)"
        )
        with self.db.transaction(tenant_id) as conn:
            return self._rewrite_memberships(
                conn,
                tenant_id,
                where,
                (*stream_ids, target_id),
                lambda current: [target_id, *current],
            )

    async def pull_stream_ids(self, tenant_id: str, stream_ids: list[str]) -> int:
        """Remove the given ids from every live event's memberships.

        Returns:
            Number of events updated
        """
        if not stream_ids:
            return 0
        removed = set(stream_ids)
        with self.db.transaction(tenant_id) as conn:
            return self._rewrite_memberships(
                conn,
                tenant_id,
                _any_in(stream_ids),
                tuple(stream_ids),
                lambda current: [s for s in current if s not in removed],
            )

    async def delete_streamless_events(self, tenant_id: str, mode: DeletionMode) -> int:
        """Tombstone live events left without any stream membership.

        Under keep-nothing only id and deletion time survive; keep-authors
        also keeps modified and modified_by.

        Returns:
            Number of events deleted
        """
        assignments = ["deleted = ?"]
        if mode is not DeletionMode.KEEP_EVERYTHING:
            assignments.append("trashed = 0")
            assignments.extend(f"{name} = NULL" for name in _TOMBSTONE_CLEAR_FIELDS)
        if mode is DeletionMode.KEEP_NOTHING:
            assignments.extend(["modified = NULL", "modified_by = NULL"])

        with self.db.transaction(tenant_id) as conn:
            cursor = conn.execute(
                f"UPDATE events SET {', '.join(assignments)} "
                f"WHERE tenant_id = ? AND {LIVE} AND json_array_length(stream_ids) = 0",
                (now_ms(), tenant_id),
            )
            return cursor.rowcount
