"""Per-workflow execution state and its store."""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Dict, List, Literal, Optional

from pydantic import Field

from .contracts import ChatMessage, ReviewItem, WireModel, utcnow
from .errors import IllegalTransitionError

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PAUSED_FOR_REVIEW = "paused_for_review"
    FAILED = "failed"
    DISMISSED = "dismissed"


ALLOWED_STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    # Sentinel and human steps complete without executing.
    StepStatus.PENDING: {StepStatus.EXECUTING, StepStatus.COMPLETED},
    StepStatus.EXECUTING: {
        StepStatus.COMPLETED,
        StepStatus.PAUSED_FOR_REVIEW,
        StepStatus.FAILED,
    },
    StepStatus.PAUSED_FOR_REVIEW: {
        StepStatus.EXECUTING,
        StepStatus.COMPLETED,
        StepStatus.DISMISSED,
    },
    StepStatus.FAILED: {StepStatus.EXECUTING, StepStatus.DISMISSED},
    StepStatus.COMPLETED: set(),
    StepStatus.DISMISSED: set(),
}


class GuidanceEntry(WireModel):
    """Operator chat folded into a step's context on approve or reject."""

    step_id: str
    chat_history: List[ChatMessage] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    kind: Literal["guidance", "rejection_feedback"] = "guidance"


class ExecutionState(WireModel):
    """Mutable run state of one workflow.

    ``epoch`` identifies the logical run; ``continuation`` is bumped on every
    resume so that a stale loop can detect it no longer owns the run.
    """

    workflow_id: str
    epoch: int
    continuation: int = 0
    current_step_index: int = 0
    is_running: bool = True
    digital_worker_name: str
    start_time: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    step_start_times: Dict[str, datetime] = Field(default_factory=dict)
    step_durations: Dict[str, float] = Field(default_factory=dict)
    step_statuses: Dict[str, StepStatus] = Field(default_factory=dict)
    guidance_context: List[GuidanceEntry] = Field(default_factory=list)
    pending_review: Optional[ReviewItem] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def step_status(self, step_id: str) -> StepStatus:
        return self.step_statuses.get(step_id, StepStatus.PENDING)

    def transition_step(self, step_id: str, to: StepStatus) -> None:
        current = self.step_status(step_id)
        if to not in ALLOWED_STEP_TRANSITIONS[current]:
            raise IllegalTransitionError(
                f"Illegal step transition for {step_id}: {current.value} -> {to.value}"
            )
        self.step_statuses[step_id] = to
        now = utcnow()
        if to == StepStatus.EXECUTING:
            self.step_start_times[step_id] = now
        elif to == StepStatus.COMPLETED and step_id in self.step_start_times:
            started = self.step_start_times[step_id]
            self.step_durations[step_id] = (now - started).total_seconds()

    def fold_guidance(
        self,
        step_id: str,
        chat_history: List[ChatMessage],
        kind: Literal["guidance", "rejection_feedback"] = "guidance",
    ) -> None:
        """Append ``chat_history`` to the step's guidance; earlier entries are kept."""
        if not chat_history:
            return
        self.guidance_context.append(
            GuidanceEntry(
                step_id=step_id,
                chat_history=[msg.model_copy(deep=True) for msg in chat_history],
                kind=kind,
            )
        )

    def guidance_for(self, step_id: str) -> List[ChatMessage]:
        """Flatten every guidance entry of ``step_id`` in chronological order."""
        history: List[ChatMessage] = []
        for entry in self.guidance_context:
            if entry.step_id != step_id:
                continue
            if entry.kind == "rejection_feedback":
                history.append(
                    ChatMessage(
                        sender="system",
                        text="The previous attempt at this step was rejected. "
                        "Redo it differently using the feedback below.",
                        timestamp=entry.timestamp,
                    )
                )
            history.extend(entry.chat_history)
        return history


class ExecutionStateStore:
    """Holds at most one ``ExecutionState`` per workflow id.

    Mutations of a given entry must happen while holding ``lock(workflow_id)``.
    Completed states stay in the store until ``delete`` or ``sweep`` is called
    by the owner.
    """

    def __init__(self) -> None:
        self._states: Dict[str, ExecutionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._epochs = itertools.count(1)

    @asynccontextmanager
    async def lock(self, workflow_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(workflow_id, asyncio.Lock())
        async with lock:
            yield

    def get(self, workflow_id: str) -> ExecutionState | None:
        return self._states.get(workflow_id)

    def snapshot(self, workflow_id: str) -> ExecutionState | None:
        """Return a deep copy that callers may keep without affecting the run."""
        state = self._states.get(workflow_id)
        return state.model_copy(deep=True) if state else None

    def create(self, workflow_id: str, digital_worker_name: str) -> ExecutionState:
        """Replace any previous state of ``workflow_id`` with a fresh run."""
        state = ExecutionState(
            workflow_id=workflow_id,
            epoch=next(self._epochs),
            digital_worker_name=digital_worker_name,
        )
        self._states[workflow_id] = state
        return state

    def delete(self, workflow_id: str) -> None:
        self._states.pop(workflow_id, None)

    def sweep(self) -> List[str]:
        """Drop completed, inert states and return the removed workflow ids."""
        removed = [
            wf_id
            for wf_id, state in self._states.items()
            if state.is_completed and not state.is_running
        ]
        for wf_id in removed:
            del self._states[wf_id]
            lock = self._locks.get(wf_id)
            if lock is not None and not lock.locked():
                del self._locks[wf_id]
        if removed:
            logger.info(f"Swept {len(removed)} completed execution states")
        return removed

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._states

    def __len__(self) -> int:
        return len(self._states)
