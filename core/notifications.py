"""
Notification broker - fan-out of routine state changes to live listeners.

The schedulers publish through the `NotificationSink` interface; the API
subscribes a queue per open event stream and relays events as SSE.
Publishing never blocks and never raises: a listener whose queue is full
misses the event.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from collections import defaultdict

from models.schemas import NotificationEvent

logger = structlog.get_logger()


class NotificationSink(abc.ABC):
    """Fire-and-forget delivery of tenant-scoped events."""

    @abc.abstractmethod
    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        ...


class NullNotificationSink(NotificationSink):
    """Discards every event."""

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        return None


class InMemoryNotificationBroker(NotificationSink):
    """Per-tenant subscriber queues held in process memory."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self.published = 0
        self.dropped = 0

    def subscribe(self, tenant_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[tenant_id].add(queue)
        logger.info("notification_subscribed", tenant_id=tenant_id,
                    listeners=len(self._subscribers[tenant_id]))
        return queue

    def unsubscribe(self, tenant_id: str, queue: asyncio.Queue) -> None:
        listeners = self._subscribers.get(tenant_id)
        if not listeners:
            return
        listeners.discard(queue)
        if not listeners:
            del self._subscribers[tenant_id]
        logger.info("notification_unsubscribed", tenant_id=tenant_id)

    def listener_count(self, tenant_id: str) -> int:
        return len(self._subscribers.get(tenant_id, ()))

    async def publish(self, tenant_id: str, event: NotificationEvent) -> None:
        self.published += 1
        for queue in list(self._subscribers.get(tenant_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("notification_dropped", tenant_id=tenant_id,
                               event_type=event.type.value, conversation_id=event.conversation_id)
        logger.info("notification_published", tenant_id=tenant_id,
                    event_type=event.type.value, conversation_id=event.conversation_id)
