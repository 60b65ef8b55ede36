"""In-process fan-out transport."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional

from ..contracts import ApprovalEvent
from ..exceptions import SubscriberLimitExceeded
from .base import BaseTransport

logger = logging.getLogger(__name__)


class InMemoryTransport(BaseTransport):
    """Bounded pub/sub inside one process.

    Every subscriber owns a queue of at most ``queue_size`` events; when a
    slow subscriber's queue is full the oldest event is dropped. At most
    ``max_subscribers`` subscriptions may be open per topic.
    """

    def __init__(self, max_subscribers: int = 64, queue_size: int = 256) -> None:
        self.max_subscribers = max_subscribers
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue[ApprovalEvent]]] = defaultdict(list)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, event: ApprovalEvent) -> None:
        """Copy the event into every subscriber queue of ``topic``."""
        for queue in list(self._subscribers.get(topic, ())):
            if queue.full():
                queue.get_nowait()
                logger.warning(f"Dropped oldest event for a slow subscriber on {topic}")
            queue.put_nowait(event)

    def open(self, topic: str) -> asyncio.Queue[ApprovalEvent]:
        """Register a subscriber queue; pair with ``close``."""
        subscribers = self._subscribers[topic]
        if len(subscribers) >= self.max_subscribers:
            raise SubscriberLimitExceeded(topic, self.max_subscribers)
        queue: asyncio.Queue[ApprovalEvent] = asyncio.Queue(maxsize=self.queue_size)
        subscribers.append(queue)
        return queue

    def close(self, topic: str, queue: asyncio.Queue[ApprovalEvent]) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers and queue in subscribers:
            subscribers.remove(queue)
            if not subscribers:
                del self._subscribers[topic]

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ApprovalEvent]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open.
                If None, runs indefinitely.
        """
        queue = self.open(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        try:
            while True:
                if deadline is None:
                    yield await queue.get()
                    continue
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield event
        finally:
            self.close(topic, queue)
