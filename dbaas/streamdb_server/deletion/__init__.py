"""
Deletion module for StreamDB - cascading stream deletion.

This module handles:
- Soft delete (trash) vs hard delete of streams
- Closure of a stream over its descendants
- Linked-event checks and the merge/detach disposition
- Retention of event history per the tenant's deletion mode
- Best-effort removal of attachment files
- Removal of stream documents and change notifications

Invariants:
    - Validation happens before any write
    - Every phase is idempotent; recovery is by re-running the request
"""

from .closure import TreeClosure
from .engine import AccessChecker, DeletionOutcome, StreamDeletionEngine, is_system_stream
from .notifier import ChangeNotifier, InMemoryNotificationBus, Notification, NotificationKind
from .pruner import StreamPruner
from .reaper import AttachmentReaper
from .retention import Disposition, EventFate, RetentionPolicy, RetentionReport, classify
from .scanner import LinkedEventScanner
from .trash import TrashGate

__all__ = [
    "AccessChecker",
    "AttachmentReaper",
    "ChangeNotifier",
    "DeletionOutcome",
    "Disposition",
    "EventFate",
    "InMemoryNotificationBus",
    "LinkedEventScanner",
    "Notification",
    "NotificationKind",
    "RetentionPolicy",
    "RetentionReport",
    "StreamDeletionEngine",
    "StreamPruner",
    "TrashGate",
    "TreeClosure",
    "classify",
    "is_system_stream",
]
