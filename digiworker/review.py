"""Operator decisions on paused workflow runs."""

from __future__ import annotations

import logging

from .contracts import ReviewItem
from .errors import ReviewNotPending
from .events import EventEmitter
from .sequencer import StepSequencer
from .state import ExecutionState, ExecutionStateStore, StepStatus

logger = logging.getLogger(__name__)


class ReviewCoordinator:
    """Applies approve/reject decisions and resumes the sequencer.

    A review item is consumed under the workflow's lock the first time it is
    approved or rejected; any later call with the same item raises
    ``ReviewNotPending``.
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        sequencer: StepSequencer,
        emitter: EventEmitter,
    ) -> None:
        self._store = store
        self._sequencer = sequencer
        self._emitter = emitter

    async def approve(self, review: ReviewItem) -> None:
        """Fold the review's chat into the step guidance and resume the run.

        Approval checkpoints resume at the next step; every other review kind
        retries the same step with the accumulated guidance.
        """
        async with self._store.lock(review.workflow_id):
            state, pending = self._consume(review)
            state.fold_guidance(pending.step_id, review.chat_history)
            if not pending.retries_same_step:
                state.transition_step(pending.step_id, StepStatus.COMPLETED)
                state.current_step_index += 1
            state.is_running = True
            logger.info(
                f"Approved {pending.action.type.value} for step {pending.step_id} "
                f"of workflow_id={review.workflow_id}"
            )
            self._emitter.workflow_update(
                review.workflow_id,
                f"Approved: {pending.action.type.value}",
                step_id=pending.step_id,
                digital_worker_name=pending.digital_worker_name,
            )
            self._sequencer.launch(state)

    async def reject(self, review: ReviewItem, retry_with_feedback: bool = False) -> None:
        """Redo the step with operator feedback, or dismiss the review.

        Feedback requires at least one user message in the review's chat
        history; without it the review is dismissed and the run stays paused.
        """
        async with self._store.lock(review.workflow_id):
            state, pending = self._consume(review)
            has_feedback = any(msg.sender == "user" for msg in review.chat_history)
            if retry_with_feedback and has_feedback:
                state.fold_guidance(
                    pending.step_id, review.chat_history, kind="rejection_feedback"
                )
                state.is_running = True
                self._emitter.workflow_update(
                    review.workflow_id,
                    f"Rejected with feedback: {pending.action.type.value}",
                    step_id=pending.step_id,
                    digital_worker_name=pending.digital_worker_name,
                )
                self._sequencer.launch(state)
                return

            state.transition_step(pending.step_id, StepStatus.DISMISSED)
            logger.info(
                f"Dismissed {pending.action.type.value} for step {pending.step_id} "
                f"of workflow_id={review.workflow_id}"
            )
            self._emitter.workflow_update(
                review.workflow_id,
                f"Rejected: {pending.action.type.value}",
                step_id=pending.step_id,
                digital_worker_name=pending.digital_worker_name,
            )

    def _consume(self, review: ReviewItem) -> tuple[ExecutionState, ReviewItem]:
        state = self._store.get(review.workflow_id)
        pending = state.pending_review if state else None
        if pending is None or pending.id != review.id:
            raise ReviewNotPending(review.id, review.workflow_id)
        state.pending_review = None
        return state, pending
