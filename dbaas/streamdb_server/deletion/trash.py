"""
Soft-delete gate of stream deletion.

The first delete of a stream only flags it ``trashed``; a delete on an
already trashed stream proceeds to hard deletion. A crash between the two
calls leaves the stream in the trash rather than half-destroyed.
"""

from __future__ import annotations

import logging

from ..store.stream_store import Stream, StreamStore
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)


class TrashGate:
    def __init__(self, stream_store: StreamStore) -> None:
        self.stream_store = stream_store

    @staticmethod
    def requires_hard_delete(stream: Stream) -> bool:
        return stream.trashed

    async def trash(
        self,
        tenant_id: str,
        stream: Stream,
        actor: str,
        notifier: ChangeNotifier,
    ) -> Stream:
        """Flag the stream as trashed and record a streams-changed notification."""
        updated = await self.stream_store.update_stream(
            tenant_id, stream.id, {"trashed": True}, actor=actor
        )
        if updated is None:
            # Removed concurrently; report the state we were asked about
            updated = stream
        notifier.streams_changed()

        logger.info(
            "Stream moved to trash",
            extra={"tenant_id": tenant_id, "stream_id": stream.id, "actor": actor},
        )
        return updated
