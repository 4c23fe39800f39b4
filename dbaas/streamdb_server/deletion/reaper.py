"""
Best-effort removal of attachment files.

Attachment files are derived from event records, so losing the race or
failing to delete them never blocks or fails a stream deletion. Removal
runs as background tasks; failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging

from ..store.attachment_store import AttachmentStore

logger = logging.getLogger(__name__)


class AttachmentReaper:
    """Schedules and tracks attachment removal tasks.

    Example:
        >>> reaper = AttachmentReaper(files)
        >>> reaper.schedule("t1", "evt1")
        >>> await reaper.drain()  # on shutdown or in tests
    """

    def __init__(self, attachment_store: AttachmentStore) -> None:
        self.attachment_store = attachment_store
        self._pending: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def remove_attachments(self, tenant_id: str, event_id: str) -> bool:
        """Remove the event's attachment files, logging instead of raising.

        Returns:
            True if files were removed
        """
        try:
            return await self.attachment_store.remove_all_for_event(tenant_id, event_id)
        except Exception as e:
            logger.error(
                f"Failed to remove attachments of event {event_id}: {e}",
                extra={"tenant_id": tenant_id, "event_id": event_id},
                exc_info=True,
            )
            return False

    def schedule(self, tenant_id: str, event_id: str) -> asyncio.Task:
        """Start removal in the background without waiting for it."""
        task = asyncio.create_task(self.remove_attachments(tenant_id, event_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled removal to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
