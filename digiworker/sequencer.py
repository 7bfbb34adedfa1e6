"""The state machine driving one workflow run from its first to its last step."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Sequence, Tuple

from .capabilities import CapabilityExecutor, Completed, Failed, PausedForReview, StepOutcome
from .config import ApprovalPolicy
from .constants import DEFAULT_STEP_DELAY
from .contracts import (
    ActionType,
    ChatMessage,
    ReviewAction,
    ReviewActionType,
    ReviewItem,
    Step,
    StepType,
    Workflow,
    utcnow,
)
from .events import EventEmitter
from .persistence import WorkflowRepository
from .state import ExecutionState, ExecutionStateStore, StepStatus

logger = logging.getLogger(__name__)

RunToken = Tuple[int, int]

_PASS_THROUGH_TYPES = {StepType.TRIGGER, StepType.END}


class StepSequencer:
    """Runs each workflow as one asyncio task at a time.

    A loop task owns its run only while the stored state is running and still
    carries the ``(epoch, continuation)`` token the task was launched with.
    Every continuation re-checks ownership under the workflow's lock before it
    touches state, so a stopped or resumed run can never be advanced by a
    stale task.
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        repository: WorkflowRepository,
        executor: CapabilityExecutor,
        emitter: EventEmitter,
        *,
        step_delay: float = DEFAULT_STEP_DELAY,
        approval_policy: ApprovalPolicy = ApprovalPolicy.DECISION_ONLY,
    ) -> None:
        self._store = store
        self._repository = repository
        self._executor = executor
        self._emitter = emitter
        self._step_delay = step_delay
        self.approval_policy = approval_policy
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Task management (callers hold the workflow's lock)

    def launch(self, state: ExecutionState) -> asyncio.Task[None]:
        """Start a new loop task owning ``state``'s run."""
        workflow_id = state.workflow_id
        state.continuation += 1
        token = (state.epoch, state.continuation)
        task = asyncio.create_task(
            self._run(workflow_id, token), name=f"workflow-{workflow_id}"
        )
        self._tasks[workflow_id] = task
        task.add_done_callback(lambda t: self._forget(workflow_id, t))
        return task

    def cancel(self, workflow_id: str) -> None:
        task = self._tasks.pop(workflow_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def task_for(self, workflow_id: str) -> Optional[asyncio.Task[None]]:
        return self._tasks.get(workflow_id)

    def active_tasks(self) -> list[asyncio.Task[None]]:
        return [task for task in self._tasks.values() if not task.done()]

    def active_workflow_ids(self) -> list[str]:
        return [wf_id for wf_id, task in self._tasks.items() if not task.done()]

    def _forget(self, workflow_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(workflow_id) is task:
            del self._tasks[workflow_id]

    @staticmethod
    def _owns(state: Optional[ExecutionState], token: RunToken) -> bool:
        return (
            state is not None
            and state.is_running
            and (state.epoch, state.continuation) == token
        )

    # ------------------------------------------------------------------
    # Loop

    async def _run(self, workflow_id: str, token: RunToken) -> None:
        try:
            await self._drive(workflow_id, token)
        except Exception as e:
            logger.exception(f"Execution loop for workflow_id={workflow_id} crashed")
            async with self._store.lock(workflow_id):
                state = self._store.get(workflow_id)
                if self._owns(state, token):
                    self._halt(state, f"Internal error: {e}")

    async def _drive(self, workflow_id: str, token: RunToken) -> None:
        while True:
            async with self._store.lock(workflow_id):
                state = self._store.get(workflow_id)
                if not self._owns(state, token):
                    return
                workflow = await self._repository.get_workflow_by_id(workflow_id)
                if workflow is None:
                    self._halt(state, "Workflow not found")
                    return
                if state.current_step_index >= len(workflow.steps):
                    self._complete_workflow(state, workflow)
                    return

                step = workflow.steps[state.current_step_index]
                worker = self._worker_for(state, step)
                execute = not (step.is_human or step.type in _PASS_THROUGH_TYPES)
                if execute:
                    state.transition_step(step.id, StepStatus.EXECUTING)
                    guidance = state.guidance_for(step.id)
                    logger.info(
                        f"Executing step {step.id} ({step.label}) for workflow_id={workflow_id}"
                    )
                else:
                    self._pass_through(state, step, worker)

            if execute:
                outcome = await self._execute(workflow_id, step, guidance)
                async with self._store.lock(workflow_id):
                    state = self._store.get(workflow_id)
                    if not self._owns(state, token):
                        logger.info(
                            f"Discarding outcome of step {step.id}: run of workflow_id={workflow_id} was stopped"
                        )
                        return
                    if not self._apply_outcome(state, step, worker, outcome):
                        return

            if step.type != StepType.END:
                await asyncio.sleep(self._step_delay)

    async def _execute(
        self, workflow_id: str, step: Step, guidance: Sequence[ChatMessage]
    ) -> StepOutcome:
        try:
            return await self._executor.execute_step(step, guidance)
        except Exception as e:
            logger.exception(
                f"Unexpected error executing step {step.id} for workflow_id={workflow_id}"
            )
            return Failed(e)

    # ------------------------------------------------------------------
    # Transitions (caller holds the workflow's lock)

    def _pass_through(self, state: ExecutionState, step: Step, worker: str) -> None:
        """Complete a trigger, end or human step without executing it."""
        state.transition_step(step.id, StepStatus.COMPLETED)
        state.current_step_index += 1
        if step.type == StepType.END:
            return
        if step.is_human:
            assignee = step.assigned_to.human_name if step.assigned_to else None
            message = f"Completed step: {step.label} (handled by {assignee or 'a human'})"
        else:
            message = f"Completed step: {step.label}"
        self._emitter.workflow_update(
            state.workflow_id, message, step_id=step.id, digital_worker_name=worker
        )

    def _apply_outcome(
        self, state: ExecutionState, step: Step, worker: str, outcome: StepOutcome
    ) -> bool:
        """Record ``outcome``; return ``True`` when the run moves on to the next step."""
        if isinstance(outcome, Completed):
            if self.requires_approval(step, outcome):
                state.transition_step(step.id, StepStatus.PAUSED_FOR_REVIEW)
                review = self._approval_review(state, step, worker, outcome)
                self._pause(state, review, f"Action required for step: {step.label}")
                return False
            state.transition_step(step.id, StepStatus.COMPLETED)
            state.current_step_index += 1
            self._emitter.workflow_update(
                state.workflow_id,
                f"Completed step: {step.label}",
                step_id=step.id,
                digital_worker_name=worker,
            )
            return True

        if isinstance(outcome, PausedForReview):
            state.transition_step(step.id, StepStatus.PAUSED_FOR_REVIEW)
            review = self._pause_review(state, step, worker, outcome)
            self._pause(state, review, outcome.question)
            return False

        state.transition_step(step.id, StepStatus.FAILED)
        logger.error(
            f"Error in step {step.id} ({step.label}) for workflow_id={state.workflow_id}: "
            f"{outcome.error_type}: {outcome.error}"
        )
        message = f'Error in step "{step.label}": {outcome.error}'
        review = ReviewItem(
            workflow_id=state.workflow_id,
            step_id=step.id,
            digital_worker_name=worker,
            action=ReviewAction(
                type=ReviewActionType.ERROR,
                payload={
                    "step": step.label,
                    "error": str(outcome.error),
                    "error_type": outcome.error_type,
                },
            ),
            chat_history=[ChatMessage(sender="system", text=message)],
        )
        self._pause(state, review, message)
        return False

    def requires_approval(self, step: Step, outcome: Completed) -> bool:
        policy = self.approval_policy
        if policy == ApprovalPolicy.ALWAYS:
            return True
        if policy == ApprovalPolicy.NEVER:
            return False
        if step.type == StepType.DECISION:
            return True
        if policy == ApprovalPolicy.DECISION_OR_BLUEPRINT_ACTIONS:
            acted = any(a.type != ActionType.COMPLETE.value for a in outcome.actions)
            return acted and not step.blueprint.is_empty()
        return False

    def _pause(self, state: ExecutionState, review: ReviewItem, message: str) -> None:
        state.pending_review = review
        state.is_running = False
        self._emitter.review_needed(review, message)

    def _approval_review(
        self, state: ExecutionState, step: Step, worker: str, outcome: Completed
    ) -> ReviewItem:
        return ReviewItem(
            workflow_id=state.workflow_id,
            step_id=step.id,
            digital_worker_name=worker,
            action=ReviewAction(
                type=ReviewActionType.APPROVAL_REQUIRED,
                payload={
                    "step": step.label,
                    "message": outcome.message,
                    "actions": [a.model_dump(mode="json", by_alias=True) for a in outcome.actions],
                    "generated_images": list(outcome.generated_images),
                },
            ),
            chat_history=[ChatMessage(sender="agent", text=outcome.message)],
            preview_image_url=outcome.generated_images[-1] if outcome.generated_images else None,
        )

    def _pause_review(
        self, state: ExecutionState, step: Step, worker: str, outcome: PausedForReview
    ) -> ReviewItem:
        payload: dict[str, object] = {"step": step.label, "question": outcome.question}
        if outcome.message:
            payload["message"] = outcome.message
        if outcome.kind == ReviewActionType.FILE_UPLOAD_REQUESTED:
            payload["file_type"] = outcome.requested_file_type
            payload["file_description"] = outcome.file_description
        elif outcome.kind == ReviewActionType.IMAGE_PREVIEW:
            payload["image_url"] = outcome.preview_image_url
            payload["caption"] = outcome.preview_image_caption

        chat: list[ChatMessage] = []
        if outcome.message and outcome.message != outcome.question:
            chat.append(ChatMessage(sender="agent", text=outcome.message))
        chat.append(
            ChatMessage(
                sender="agent",
                text=outcome.question,
                image_url=outcome.preview_image_url,
            )
        )
        return ReviewItem(
            workflow_id=state.workflow_id,
            step_id=step.id,
            digital_worker_name=worker,
            action=ReviewAction(type=outcome.kind, payload=payload),
            needs_guidance=True,
            chat_history=chat,
            requested_file_type=outcome.requested_file_type,
            preview_image_url=outcome.preview_image_url,
            preview_image_caption=outcome.preview_image_caption,
        )

    def _complete_workflow(self, state: ExecutionState, workflow: Workflow) -> None:
        state.is_running = False
        state.completed_at = utcnow()
        logger.info(f"Workflow completed for workflow_id={workflow.id}")
        self._emitter.completed(
            workflow.id,
            f'Workflow "{workflow.name}" completed',
            digital_worker_name=state.digital_worker_name,
        )

    def _halt(self, state: ExecutionState, reason: str) -> None:
        state.is_running = False
        logger.warning(f"Workflow stopped for workflow_id={state.workflow_id}: {reason}")
        self._emitter.workflow_update(state.workflow_id, f"Workflow stopped: {reason}")

    @staticmethod
    def _worker_for(state: ExecutionState, step: Step) -> str:
        if step.assigned_to and step.assigned_to.agent_name:
            return step.assigned_to.agent_name
        return state.digital_worker_name
