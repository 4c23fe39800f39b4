"""
Storage module for StreamDB - per-tenant collections.

This module handles:
- Per-tenant SQLite database files and schema
- Stream collection (tree of streams, deletion tombstones)
- Event collection (live events, history versions, tombstones)
- Attachment files on the local filesystem

Invariants:
    - Collections share a database file but never a transaction
    - Every statement is scoped by tenant_id
    - Bulk operations are idempotent under re-run
"""

from .attachment_store import AttachmentStore
from .database import TenantDatabase, TenantNotFoundError
from .event_store import Event, EventStore
from .stream_store import Stream, StreamDeletion, StreamStore

__all__ = [
    "AttachmentStore",
    "Event",
    "EventStore",
    "Stream",
    "StreamDeletion",
    "StreamStore",
    "TenantDatabase",
    "TenantNotFoundError",
]
