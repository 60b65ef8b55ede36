"""Redis transport for cross-process event push."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import ApprovalEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport):
    """Redis PUBLISH/SUBSCRIBE based transport."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "ratify",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _channel(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: ApprovalEvent) -> None:
        """Publish the event on the topic channel."""
        if not self._redis:
            await self.connect()
        await self._redis.publish(self._channel(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ApprovalEvent]:
        """Yield events published on the topic channel."""
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel(topic))
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            while True:
                if lifespan is not None and loop.time() - start_time >= lifespan:
                    break
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message is None:
                    continue
                try:
                    yield ApprovalEvent.from_json(message["data"])
                except ValidationError as e:
                    logger.error(f"Failed to parse event on {topic}: {e}")
        finally:
            await pubsub.unsubscribe(self._channel(topic))
            await pubsub.aclose()
