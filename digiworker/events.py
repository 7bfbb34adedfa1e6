"""Control Room event emission.

The emitter is the engine's only outbound channel. Delivery is
fire-and-forget and at-most-once: a slow or failing observer never stalls a
workflow run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from .constants import DEFAULT_CONTROL_ROOM_TOPIC
from .contracts import (
    ControlRoomUpdate,
    ControlRoomUpdateType,
    ReviewAction,
    ReviewItem,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)

Observer = Callable[[ControlRoomUpdate], Union[None, Awaitable[None]]]


class EventEmitter:
    """Publish/subscribe hub for ``ControlRoomUpdate`` events."""

    def __init__(self) -> None:
        self._observers: List[Observer] = []
        self._pending: Set[asyncio.Task[Any]] = set()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` and return a callable that unregisters it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def emit(self, update: ControlRoomUpdate) -> None:
        """Deliver ``update`` to every observer without waiting on them."""
        logger.debug(
            f"Control Room {update.type.value} for workflow_id={update.workflow_id}: {update.message}"
        )
        for observer in list(self._observers):
            try:
                result = observer(update)
            except Exception:
                logger.exception(
                    f"Observer {observer!r} failed for workflow_id={update.workflow_id}"
                )
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Control Room delivery failed: {exc!r}")

    async def drain(self) -> None:
        """Wait for in-flight asynchronous deliveries to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Convenience builders used by the sequencer and review coordinator

    def workflow_update(
        self,
        workflow_id: str,
        message: str,
        *,
        step_id: Optional[str] = None,
        digital_worker_name: Optional[str] = None,
        action: Optional[ReviewAction] = None,
    ) -> None:
        self.emit(
            ControlRoomUpdate(
                type=ControlRoomUpdateType.WORKFLOW_UPDATE,
                workflow_id=workflow_id,
                step_id=step_id,
                digital_worker_name=digital_worker_name,
                message=message,
                action=action,
            )
        )

    def review_needed(self, review: ReviewItem, message: str) -> None:
        self.emit(
            ControlRoomUpdate(
                type=ControlRoomUpdateType.REVIEW_NEEDED,
                workflow_id=review.workflow_id,
                step_id=review.step_id,
                digital_worker_name=review.digital_worker_name,
                message=message,
                action=review.action,
                review_item=review.model_copy(deep=True),
            )
        )

    def completed(self, workflow_id: str, message: str, digital_worker_name: str) -> None:
        self.emit(
            ControlRoomUpdate(
                type=ControlRoomUpdateType.COMPLETED,
                workflow_id=workflow_id,
                digital_worker_name=digital_worker_name,
                message=message,
            )
        )


class TransportObserver:
    """Observer forwarding every update to a transport topic."""

    def __init__(
        self, transport: BaseTransport, topic: str = DEFAULT_CONTROL_ROOM_TOPIC
    ) -> None:
        self._transport = transport
        self._topic = topic

    async def __call__(self, update: ControlRoomUpdate) -> None:
        await self._transport.publish(self._topic, update)
