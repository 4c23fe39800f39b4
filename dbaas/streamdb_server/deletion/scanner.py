"""
Linked-event probe and disposition check.

Before anything is mutated, the engine must know whether events reference
the closure and, if so, that the caller said what to do with them.

Invariants:
    - Merging into the parent of a root stream is rejected first, whether or
      not events are linked
    - Linked events without a disposition are rejected, never guessed
    - The probe is a LIMIT 1 existence query, not a scan
"""

from __future__ import annotations

import logging

from ..errors import InvalidOperationError, MissingDispositionError
from ..store.event_store import EventStore
from .retention import Disposition

logger = logging.getLogger(__name__)


class LinkedEventScanner:
    def __init__(self, event_store: EventStore) -> None:
        self.event_store = event_store

    async def has_linked_events(self, tenant_id: str, closure: list[str]) -> bool:
        return await self.event_store.has_events_in_streams(tenant_id, closure)

    async def check(
        self,
        tenant_id: str,
        stream_id: str,
        closure: list[str],
        parent_id: str | None,
        disposition: Disposition | None,
    ) -> bool:
        """Validate the request against the linked events of the closure.

        Args:
            tenant_id: Tenant identifier
            stream_id: Root of the closure (the stream being deleted)
            closure: Stream id plus descendants
            parent_id: Parent of the deleted stream (None for roots)
            disposition: Caller's choice, None if undecided

        Returns:
            Whether any live event references the closure

        Raises:
            InvalidOperationError: Merge requested on a root stream
            MissingDispositionError: Linked events but no disposition
        """
        if disposition is Disposition.MERGE_INTO_PARENT and parent_id is None:
            raise InvalidOperationError(
                "Deleting a root stream with mergeEventsWithParent=true is rejected "
                "since there is no parent stream to merge linked events in.",
                stream_id=stream_id,
            )

        linked = await self.has_linked_events(tenant_id, closure)
        if linked and disposition is None:
            raise MissingDispositionError(stream_id)

        logger.debug(
            "Linked events checked",
            extra={"tenant_id": tenant_id, "stream_id": stream_id, "linked": linked},
        )
        return linked
