"""
Final phase of stream deletion: remove the stream documents.

Runs only after event handling completed, so no live event keeps a
membership pointing at a removed stream once the request succeeded.
"""

from __future__ import annotations

import logging

from ..store.stream_store import StreamStore
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)


class StreamPruner:
    def __init__(self, stream_store: StreamStore) -> None:
        self.stream_store = stream_store

    async def delete_streams(
        self, tenant_id: str, closure: list[str], notifier: ChangeNotifier
    ) -> int:
        """Remove every stream of the closure in one bulk operation.

        Already-absent ids are skipped, so a re-run is a no-op.

        Returns:
            Number of streams removed
        """
        removed = await self.stream_store.delete_streams(tenant_id, closure)
        notifier.streams_changed()

        logger.info(
            "Streams pruned",
            extra={"tenant_id": tenant_id, "requested": len(closure), "removed": removed},
        )
        return removed
