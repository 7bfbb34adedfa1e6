"""Redis pub/sub transport for cross-process Control Room streams."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

from pydantic import ValidationError

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import ControlRoomUpdate
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport):
    """Redis-based transport publishing updates on ``digiworker:<topic>`` channels."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, update: ControlRoomUpdate) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(f"digiworker:{topic}", update.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[ControlRoomUpdate]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(f"digiworker:{topic}")
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        try:
            while True:
                if lifespan and start_time is not None:
                    if loop.time() - start_time >= lifespan:
                        break

                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message is None:
                    continue
                try:
                    yield ControlRoomUpdate.from_json(message["data"])
                except ValidationError as e:
                    logger.warning(f"Failed to parse Control Room update: {e}")
        finally:
            await pubsub.unsubscribe(f"digiworker:{topic}")
            await pubsub.aclose()
