"""In-memory transport for testing and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, List, Optional

from ..contracts import ControlRoomUpdate
from .base import BaseTransport


class InMemoryTransport(BaseTransport):
    """Fan-out queues, one per active subscriber of a topic.

    Updates published while nobody is subscribed are dropped, matching the
    at-most-once delivery of the Control Room stream.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[asyncio.Queue[ControlRoomUpdate]]] = (
            defaultdict(list)
        )
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, update: ControlRoomUpdate) -> None:
        """Publish update to every subscriber queue of ``topic``."""
        async with self._lock:
            for queue in self._subscribers[topic]:
                queue.put_nowait(update)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ControlRoomUpdate]:
        queue: asyncio.Queue[ControlRoomUpdate] = asyncio.Queue()
        async with self._lock:
            self._subscribers[topic].append(queue)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    update = await asyncio.wait_for(queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                yield update
        finally:
            async with self._lock:
                self._subscribers[topic].remove(queue)
