"""Base transport interface for Control Room updates."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import ControlRoomUpdate


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, update: ControlRoomUpdate) -> None:
        """Send an update to a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ControlRoomUpdate]:
        """Yield updates published to ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError
