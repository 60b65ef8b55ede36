"""Base transport interface for the live approval event stream."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import ApprovalEvent


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract publish/subscribe channel for approval events.

    Each transport object is its own channel: create one per engine or per
    session instead of sharing a module-level emitter.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, event: ApprovalEvent) -> None:
        """Deliver an event to every current subscriber of ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ApprovalEvent]:
        """Yield events published to ``topic`` after subscription.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open.
                If None, runs until the consumer stops iterating.
        """
        raise NotImplementedError
