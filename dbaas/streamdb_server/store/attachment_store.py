"""
Attachment file storage for StreamDB.

Attachment files live on the local filesystem:

    <root_dir>/<tenant_id>/<event_id>/<file_id>

They are a derivative of the event record (the event's ``attachments``
descriptors are the source of truth), so removal is best-effort.

Invariants:
    - Path components are sanitized to prevent traversal
    - remove_all_for_event is a no-op when the event has no directory
    - Blocking filesystem calls run in a worker thread
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _safe(component: str) -> str:
    safe = "".join(c for c in component if c.isalnum() or c in "-_.").lstrip(".")
    return safe or "_"


class AttachmentStore:
    """Per-tenant, per-event attachment directories.

    Example:
        >>> files = AttachmentStore("/var/lib/streamdb/attachments")
        >>> descriptor = await files.save_attachment("t1", "evt1", "photo.jpg", b"...")
        >>> await files.remove_all_for_event("t1", "evt1")
    """

    def __init__(self, root_dir: str) -> None:
        self.root_dir = Path(root_dir)

    def event_dir(self, tenant_id: str, event_id: str) -> Path:
        return self.root_dir / _safe(tenant_id) / _safe(event_id)

    def attachment_path(self, tenant_id: str, event_id: str, file_id: str) -> Path:
        return self.event_dir(tenant_id, event_id) / _safe(file_id)

    async def save_attachment(
        self,
        tenant_id: str,
        event_id: str,
        file_name: str,
        data: bytes,
    ) -> dict[str, Any]:
        """Write an attachment file.

        Returns:
            Attachment descriptor to store on the event
        """
        file_id = str(uuid.uuid4())
        path = self.attachment_path(tenant_id, event_id, file_id)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        return {"id": file_id, "file_name": file_name, "size": len(data)}

    async def remove_all_for_event(self, tenant_id: str, event_id: str) -> bool:
        """Delete every attachment file of an event.

        Returns:
            True if a directory was removed, False if there was none

        Raises:
            OSError: If the directory exists but cannot be removed
        """
        event_dir = self.event_dir(tenant_id, event_id)
        if not event_dir.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, event_dir)
        logger.debug(
            "Removed attachments",
            extra={"tenant_id": tenant_id, "event_id": event_id},
        )
        return True
