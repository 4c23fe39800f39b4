"""
Cascading stream deletion engine.

Pipeline for one request (strictly sequential, single task):

    TrashGate ──(not trashed)──▶ flag trashed, done
        │
        └──(trashed)──▶ TreeClosure ─▶ LinkedEventScanner ─▶ RetentionPolicy
                                                              │ (AttachmentReaper)
                                                              ▼
                                                         StreamPruner

Invariants:
    - Validation (system stream, existence, permission, disposition) raises
      before the first write
    - Events are handled before streams are removed
    - A storage failure surfaces as UnexpectedError; finished phases are not
      rolled back and re-issuing the request completes the deletion
    - Notifications are returned to the caller, never sent from here

How to change safely:
    - Any new phase must be idempotent under re-run
    - Keep the closure and parent id computed once, before the first write
    - Concurrent deletions of overlapping subtrees are not serialized; the
      tree must not change shape while a request runs
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..config import AuditConfig, ServerConfig
from ..errors import ForbiddenError, InvalidOperationError, NotFoundError, UnexpectedError
from ..store.attachment_store import AttachmentStore
from ..store.database import TenantDatabase, TenantNotFoundError
from ..store.event_store import EventStore
from ..store.stream_store import StreamStore
from .closure import TreeClosure
from .notifier import ChangeNotifier, Notification
from .pruner import StreamPruner
from .reaper import AttachmentReaper
from .retention import Disposition, RetentionPolicy, RetentionReport
from .scanner import LinkedEventScanner
from .trash import TrashGate

logger = logging.getLogger(__name__)

SYSTEM_STREAM_PREFIXES = (":_system:", ":system:")


def is_system_stream(stream_id: str) -> bool:
    return stream_id.startswith(SYSTEM_STREAM_PREFIXES)


class AccessChecker(Protocol):
    """Authorization collaborator (permissions are checked upstream)."""

    async def can_delete_stream(self, stream_id: str) -> bool: ...


@dataclass
class DeletionOutcome:
    """Result of a delete request.

    Attributes:
        result: ``{"stream": {...}}`` after trashing,
            ``{"streamDeletion": {"id": ...}}`` after a hard delete
        notifications: Changes to dispatch, in emission order
        closure: Deleted stream ids (hard delete only)
        retention: Retention counters (hard delete only)
    """

    result: dict[str, Any]
    notifications: list[Notification] = field(default_factory=list)
    closure: list[str] = field(default_factory=list)
    retention: RetentionReport | None = None

    @property
    def trashed(self) -> bool:
        return "stream" in self.result


@contextmanager
def storage_phase(phase: str, tenant_id: str, stream_id: str) -> Iterator[None]:
    """Translate storage failures of a phase into UnexpectedError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error(
            f"Storage failure during {phase}: {e}",
            extra={"tenant_id": tenant_id, "stream_id": stream_id, "phase": phase},
        )
        raise UnexpectedError(f"Storage failure during {phase}: {e}", phase=phase) from e


class StreamDeletionEngine:
    """Deletes streams with their descendants and dependent events.

    Example:
        >>> engine = StreamDeletionEngine.from_config(ServerConfig.from_env())
        >>> outcome = await engine.delete("t1", "work")          # trash
        >>> outcome = await engine.delete("t1", "work", False)   # hard delete
        >>> bus.dispatch(outcome.notifications)
    """

    def __init__(
        self,
        stream_store: StreamStore,
        event_store: EventStore,
        attachment_store: AttachmentStore,
        audit: AuditConfig,
    ) -> None:
        self.stream_store = stream_store
        self.event_store = event_store
        self.reaper = AttachmentReaper(attachment_store)
        self.trash_gate = TrashGate(stream_store)
        self.scanner = LinkedEventScanner(event_store)
        self.retention = RetentionPolicy(audit, event_store, self.reaper)
        self.pruner = StreamPruner(stream_store)

    @classmethod
    def from_config(cls, config: ServerConfig) -> StreamDeletionEngine:
        db = TenantDatabase(
            config.storage.data_dir,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            cache_size_pages=config.storage.cache_size_pages,
        )
        return cls(
            StreamStore(db),
            EventStore(db, scan_batch_size=config.storage.scan_batch_size),
            AttachmentStore(config.attachments_dir),
            config.audit,
        )

    async def delete(
        self,
        tenant_id: str,
        stream_id: str,
        merge_events_with_parent: bool | None = None,
        actor: str = "system",
        access: AccessChecker | None = None,
    ) -> DeletionOutcome:
        """Trash a stream, or hard-delete it if it is already trashed.

        Args:
            tenant_id: Tenant identifier
            stream_id: Stream to delete
            merge_events_with_parent: True to merge linked events into the
                parent stream, False to detach and delete them, None if
                undecided (rejected when events are linked)
            actor: Actor recorded in tracking fields
            access: Optional authorization collaborator

        Returns:
            DeletionOutcome with result payload and notifications

        Raises:
            InvalidOperationError: System stream, or merge on a root stream
            NotFoundError: Stream (or tenant) does not exist
            ForbiddenError: Access checker denied the deletion
            MissingDispositionError: Linked events and no merge choice
            InvalidStateError: Stream tree has a cycle
            UnexpectedError: Storage failure (earlier phases stay committed)
        """
        if is_system_stream(stream_id):
            raise InvalidOperationError(
                "System streams cannot be modified or deleted", stream_id=stream_id
            )

        with storage_phase("lookup", tenant_id, stream_id):
            try:
                stream = await self.stream_store.get_stream(tenant_id, stream_id)
            except TenantNotFoundError:
                raise NotFoundError("tenant", tenant_id)
        if stream is None:
            raise NotFoundError("stream", stream_id)
        if access is not None and not await access.can_delete_stream(stream_id):
            raise ForbiddenError(stream_id)

        notifier = ChangeNotifier(tenant_id)

        if not self.trash_gate.requires_hard_delete(stream):
            with storage_phase("trash", tenant_id, stream_id):
                trashed = await self.trash_gate.trash(tenant_id, stream, actor, notifier)
            return DeletionOutcome(
                result={"stream": trashed.to_dict()},
                notifications=notifier.notifications,
            )

        return await self._delete_with_data(
            tenant_id, stream_id, Disposition.from_merge_flag(merge_events_with_parent), notifier
        )

    async def _delete_with_data(
        self,
        tenant_id: str,
        stream_id: str,
        disposition: Disposition | None,
        notifier: ChangeNotifier,
    ) -> DeletionOutcome:
        with storage_phase("closure", tenant_id, stream_id):
            tree = TreeClosure(await self.stream_store.find_streams(tenant_id))
        closure = tree.closure_of(stream_id)
        parent_id = tree.parent_of(stream_id)

        with storage_phase("linked-events", tenant_id, stream_id):
            linked = await self.scanner.check(tenant_id, stream_id, closure, parent_id, disposition)

        # Runs even without linked events to sweep leftovers of an interrupted run
        with storage_phase("events", tenant_id, stream_id):
            report = await self.retention.apply(
                tenant_id, closure, parent_id, disposition if linked else None, notifier
            )

        with storage_phase("streams", tenant_id, stream_id):
            await self.pruner.delete_streams(tenant_id, closure, notifier)

        logger.info(
            "Stream deleted",
            extra={
                "tenant_id": tenant_id,
                "stream_id": stream_id,
                "closure_size": len(closure),
                "linked_events": linked,
                "disposition": disposition.value if disposition else None,
            },
        )

        return DeletionOutcome(
            result={"streamDeletion": {"id": stream_id}},
            notifications=notifier.notifications,
            closure=closure,
            retention=report,
        )

    async def close(self) -> None:
        """Wait for background attachment removals."""
        await self.reaper.drain()
