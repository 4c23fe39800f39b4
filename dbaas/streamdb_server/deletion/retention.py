"""
Retention policy: what happens to events linked to a deleted stream subtree.

Two dispositions, chosen per request:

    merge-into-parent:
        1. (force_keep_history) snapshot every linked live event as a
           history version
        2. prepend the deleted stream's parent to events not already in it
        3. pull every closure id from live events

    detach-and-delete, branching on the tenant's deletion mode:
        keep-everything  events and their history are left untouched
        keep-authors     history of every linked event minimized to author
                         attribution, closure ids pulled, streamless events
                         deleted
        keep-nothing     history of events about to be deleted removed,
                         closure ids pulled, streamless events deleted

    In keep-authors and keep-nothing, events entirely inside the closure
    have their attachment files reaped in the background.

Every hard delete ends with a sweep of live events left without streams
(except under keep-everything). A run interrupted between the pull and the
sweep is finished by the next hard delete, whatever its disposition.

Each step is an idempotent bulk operation. A storage failure aborts the
remaining steps; steps already committed stay committed, and re-running
the same request finishes the job.

Linked events are read through a lazy scan. Every record is classified by
the pure function ``classify`` and the outcomes are collected before any
write of the phase starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..config import AuditConfig, DeletionMode
from ..store.event_store import Event, EventStore
from .notifier import ChangeNotifier
from .reaper import AttachmentReaper

logger = logging.getLogger(__name__)


class Disposition(Enum):
    """What to do with events linked to deleted streams."""

    MERGE_INTO_PARENT = "merge-into-parent"
    DETACH_AND_DELETE = "detach-and-delete"

    @classmethod
    def from_merge_flag(cls, merge_events_with_parent: bool | None) -> Disposition | None:
        """Map the ``mergeEventsWithParent`` request flag (None = undecided)."""
        if merge_events_with_parent is None:
            return None
        return cls.MERGE_INTO_PARENT if merge_events_with_parent else cls.DETACH_AND_DELETE


class EventFate(Enum):
    """Outcome of a detach for one live event."""

    SURVIVES = "survives"  # has memberships outside the closure
    DELETED = "deleted"  # every membership is inside the closure


def classify(event: Event, closure: frozenset[str]) -> EventFate:
    if any(stream_id not in closure for stream_id in event.stream_ids):
        return EventFate.SURVIVES
    return EventFate.DELETED


@dataclass
class RetentionReport:
    """Counters of one retention run.

    Attributes:
        linked_events: Live events that referenced the closure
        history_versions: History versions written (merge with history)
        history_minimized: Events whose history was minimized
        history_removed: History rows removed
        events_reattached: Events that received the parent membership
        events_detached: Events that lost closure memberships
        events_deleted: Events deleted (including streamless leftovers)
        attachments_scheduled: Events whose attachment removal was scheduled
    """

    linked_events: int = 0
    history_versions: int = 0
    history_minimized: int = 0
    history_removed: int = 0
    events_reattached: int = 0
    events_detached: int = 0
    events_deleted: int = 0
    attachments_scheduled: int = 0

    @property
    def events_changed(self) -> bool:
        return any(
            (
                self.history_versions,
                self.history_minimized,
                self.history_removed,
                self.events_reattached,
                self.events_detached,
                self.events_deleted,
            )
        )


class RetentionPolicy:
    """Applies a disposition to the events of a stream closure.

    Example:
        >>> policy = RetentionPolicy(AuditConfig(), events, reaper)
        >>> report = await policy.apply(
        ...     "t1", ["work", "work-sub"], parent_id=None,
        ...     disposition=Disposition.DETACH_AND_DELETE, notifier=notifier,
        ... )
    """

    def __init__(
        self,
        audit: AuditConfig,
        event_store: EventStore,
        reaper: AttachmentReaper,
    ) -> None:
        self.audit = audit
        self.event_store = event_store
        self.reaper = reaper

    def _scan(self, tenant_id: str, closure: list[str]) -> list[tuple[Event, EventFate]]:
        closure_set = frozenset(closure)
        return [
            (event, classify(event, closure_set))
            for event in self.event_store.iter_events_in_streams(tenant_id, closure)
        ]

    async def apply(
        self,
        tenant_id: str,
        closure: list[str],
        parent_id: str | None,
        disposition: Disposition | None,
        notifier: ChangeNotifier,
    ) -> RetentionReport:
        """Run the disposition over every live event linked to the closure.

        Pass ``disposition=None`` when nothing is linked: only the
        streamless sweep runs then, finishing an interrupted earlier run.

        Args:
            tenant_id: Tenant identifier
            closure: Deleted stream plus descendants
            parent_id: Parent of the deleted stream (merge target)
            disposition: Merge or detach, None if no event is linked
            notifier: Collects the events-changed notification

        Returns:
            RetentionReport with per-step counters
        """
        if disposition is Disposition.MERGE_INTO_PARENT:
            if parent_id is None:
                raise ValueError("merge-into-parent needs a parent stream")
            report = await self._merge_into_parent(tenant_id, closure, parent_id)
        elif disposition is Disposition.DETACH_AND_DELETE:
            report = await self._detach(tenant_id, closure)
        else:
            report = RetentionReport()

        report.events_deleted = await self.sweep_streamless(tenant_id)

        if report.events_changed:
            notifier.events_changed()
        logger.info(
            "Linked events handled",
            extra={
                "tenant_id": tenant_id,
                "disposition": disposition.value if disposition else None,
                "deletion_mode": self.audit.deletion_mode.value,
                "linked_events": report.linked_events,
                "events_deleted": report.events_deleted,
            },
        )
        return report

    async def sweep_streamless(self, tenant_id: str) -> int:
        """Delete live events that have no stream left (not under keep-everything)."""
        mode = self.audit.deletion_mode
        if mode is DeletionMode.KEEP_EVERYTHING:
            return 0
        return await self.event_store.delete_streamless_events(tenant_id, mode)

    async def _merge_into_parent(
        self, tenant_id: str, closure: list[str], parent_id: str
    ) -> RetentionReport:
        report = RetentionReport()

        if self.audit.force_keep_history:
            scanned = self._scan(tenant_id, closure)
            report.linked_events = len(scanned)
            for event, _ in scanned:
                if await self.event_store.insert_history_version(tenant_id, event):
                    report.history_versions += 1

        report.events_reattached = await self.event_store.prepend_stream_id(
            tenant_id, closure, parent_id
        )
        report.events_detached = await self.event_store.pull_stream_ids(tenant_id, closure)
        if not report.linked_events:
            report.linked_events = report.events_detached
        return report

    async def _detach(self, tenant_id: str, closure: list[str]) -> RetentionReport:
        mode = self.audit.deletion_mode
        scanned = self._scan(tenant_id, closure)
        report = RetentionReport(linked_events=len(scanned))
        if mode is DeletionMode.KEEP_EVERYTHING:
            return report

        for event, fate in scanned:
            if mode is DeletionMode.KEEP_AUTHORS:
                await self.event_store.minimize_history(tenant_id, event.id)
                report.history_minimized += 1
            elif fate is EventFate.DELETED:
                report.history_removed += await self.event_store.remove_history(
                    tenant_id, event.id
                )

        for event, fate in scanned:
            if fate is EventFate.DELETED and event.attachments:
                self.reaper.schedule(tenant_id, event.id)
                report.attachments_scheduled += 1

        report.events_detached = await self.event_store.pull_stream_ids(tenant_id, closure)
        return report
