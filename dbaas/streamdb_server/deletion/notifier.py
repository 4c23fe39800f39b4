"""
Change notifications emitted by stream deletion.

The deletion engine does not talk to a messaging system. Each mutating
phase records a Notification on a ChangeNotifier, and the engine returns
the collected list with its result; the caller dispatches it (for example
through InMemoryNotificationBus).

Invariants:
    - Notifications keep emission order
    - Dispatch is fire-and-forget: a slow or absent subscriber never blocks
      the publisher
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    """What changed for a tenant."""

    STREAMS_CHANGED = "streams-changed"
    EVENTS_CHANGED = "events-changed"


@dataclass(frozen=True)
class Notification:
    tenant_id: str
    kind: NotificationKind

    def to_dict(self) -> dict[str, str]:
        return {"tenant_id": self.tenant_id, "kind": self.kind.value}


@dataclass
class ChangeNotifier:
    """Collects the notifications of one deletion request."""

    tenant_id: str
    notifications: list[Notification] = field(default_factory=list)

    def streams_changed(self) -> None:
        self._emit(NotificationKind.STREAMS_CHANGED)

    def events_changed(self) -> None:
        self._emit(NotificationKind.EVENTS_CHANGED)

    def _emit(self, kind: NotificationKind) -> None:
        self.notifications.append(Notification(self.tenant_id, kind))
        logger.debug(
            "Change notification recorded",
            extra={"tenant_id": self.tenant_id, "kind": kind.value},
        )


class InMemoryNotificationBus:
    """Per-tenant pub/sub over asyncio queues.

    Example:
        >>> bus = InMemoryNotificationBus()
        >>> queue = await bus.subscribe("t1")
        >>> bus.dispatch(outcome.notifications)
        >>> notification = await queue.get()
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def subscribe(self, tenant_id: str) -> asyncio.Queue:
        async with self._lock:
            queue: asyncio.Queue = asyncio.Queue()
            self._subscribers[tenant_id].append(queue)
            return queue

    async def unsubscribe(self, tenant_id: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            queues = self._subscribers.get(tenant_id)
            if queues and queue in queues:
                queues.remove(queue)
                if not queues:
                    del self._subscribers[tenant_id]

    def publish(self, notification: Notification) -> int:
        """Deliver to every subscriber of the tenant.

        Returns:
            Number of subscribers reached
        """
        queues = self._subscribers.get(notification.tenant_id, [])
        for queue in queues:
            queue.put_nowait(notification)
        return len(queues)

    def dispatch(self, notifications: Iterable[Notification]) -> int:
        return sum(self.publish(notification) for notification in notifications)
