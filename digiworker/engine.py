"""Public entry point of the workflow execution engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from .capabilities import CapabilityExecutor
from .config import DigiworkerConfig, EngineConfig, load_config
from .contracts import ReviewItem, Workflow, WorkflowStatus
from .decision import ActionDecisionClient, DecisionService, PydanticAIDecisionService
from .errors import AlreadyRunning, NotActivatable, WorkflowNotFound
from .events import EventEmitter, Observer, TransportObserver
from .integrations import (
    ContentGenerationService,
    EmailIntegration,
    GeminiImageGenerator,
    GmailClient,
)
from .persistence import WorkflowRepository, get_repository
from .review import ReviewCoordinator
from .sequencer import StepSequencer
from .state import ExecutionState, ExecutionStateStore
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Runs workflows step by step and reports every transition to observers."""

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: CapabilityExecutor,
        *,
        config: Optional[EngineConfig] = None,
        store: Optional[ExecutionStateStore] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.repository = repository
        self.store = store or ExecutionStateStore()
        self.emitter = emitter or EventEmitter()
        self.sequencer = StepSequencer(
            self.store,
            repository,
            executor,
            self.emitter,
            step_delay=self.config.step_delay,
            approval_policy=self.config.approval_policy,
        )
        self.reviews = ReviewCoordinator(self.store, self.sequencer, self.emitter)

    @classmethod
    def from_config(
        cls,
        config: Optional[DigiworkerConfig] = None,
        *,
        repository: Optional[WorkflowRepository] = None,
        decision_service: Optional[DecisionService] = None,
        email: Optional[EmailIntegration] = None,
        content_generator: Optional[ContentGenerationService] = None,
        transport: Optional[BaseTransport] = None,
    ) -> "WorkflowEngine":
        """Build an engine with the configured collaborators.

        Explicit arguments take precedence over what the configuration selects.
        """
        config = config or load_config()
        decisions = ActionDecisionClient(
            decision_service or PydanticAIDecisionService(config.decision.model),
            timeout=config.engine.decision_timeout,
        )
        executor = CapabilityExecutor(
            decisions,
            email=email or GmailClient.from_config(config.gmail),
            content_generator=content_generator
            or GeminiImageGenerator.from_config(config.content_generation),
            email_read_count=config.gmail.read_count,
        )
        engine = cls(
            repository or get_repository(config=config), executor, config=config.engine
        )
        if transport is not None:
            engine.subscribe(TransportObserver(transport, config.transport.topic))
        return engine

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register a Control Room observer; returns the unsubscribe callable."""
        return self.emitter.subscribe(observer)

    # ------------------------------------------------------------------
    # Run lifecycle

    async def activate(self, workflow_id: str) -> Workflow:
        """Move a draft or paused workflow to ``active``."""
        workflow = await self._load(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            await self.repository.set_status(workflow_id, WorkflowStatus.ACTIVE)
            logger.info(
                f"Workflow {workflow_id} activated (was {workflow.status.value})"
            )
            workflow.status = WorkflowStatus.ACTIVE
        return workflow

    async def start(
        self,
        workflow_id: str,
        digital_worker_name: Optional[str] = None,
        *,
        auto_activate: bool = False,
    ) -> ExecutionState:
        """Start a fresh run of ``workflow_id`` at its first step.

        Args:
            workflow_id: Workflow to run.
            digital_worker_name: Worker the run is attributed to. Defaults to
                the workflow's assigned stakeholder, then the configured default.
            auto_activate: Activate a ``draft`` workflow before starting.

        Raises:
            WorkflowNotFound: The repository has no such workflow.
            AlreadyRunning: A run of this workflow is in progress.
            NotActivatable: The workflow is not ``active`` (and not an
                auto-activated draft).
        """
        async with self.store.lock(workflow_id):
            workflow = await self._load(workflow_id)
            existing = self.store.get(workflow_id)
            if existing is not None and existing.is_running:
                raise AlreadyRunning(workflow_id)

            if workflow.status == WorkflowStatus.DRAFT and auto_activate:
                await self.repository.set_status(workflow_id, WorkflowStatus.ACTIVE)
                logger.info(f"Auto-activated workflow {workflow_id}")
            elif workflow.status != WorkflowStatus.ACTIVE:
                raise NotActivatable(workflow_id, workflow.status.value)

            worker = (
                digital_worker_name
                or (workflow.assigned_to.stakeholder_name if workflow.assigned_to else None)
                or self.config.default_digital_worker
            )
            self.sequencer.cancel(workflow_id)
            state = self.store.create(workflow_id, worker)
            logger.info(
                f'Workflow "{workflow.name}" started for workflow_id={workflow_id} by {worker}'
            )
            self.sequencer.launch(state)
            return state.model_copy(deep=True)

    async def stop(self, workflow_id: str, reason: Optional[str] = None) -> None:
        """Stop a run; idempotent. Pending reviews of the run are discarded."""
        async with self.store.lock(workflow_id):
            self.sequencer.cancel(workflow_id)
            state = self.store.get(workflow_id)
            if state is None:
                return
            was_active = state.is_running or state.pending_review is not None
            state.is_running = False
            state.pending_review = None
            if was_active and reason:
                logger.info(f"Workflow stopped for workflow_id={workflow_id}: {reason}")
                self.emitter.workflow_update(workflow_id, f"Workflow stopped: {reason}")

    async def delete_workflow(self, workflow_id: str) -> None:
        """Stop any run and remove both the definition and its execution state."""
        await self.stop(workflow_id, reason="Workflow deleted")
        await self.repository.delete_workflow(workflow_id)
        self.store.delete(workflow_id)

    def get_execution_state(self, workflow_id: str) -> ExecutionState | None:
        return self.store.snapshot(workflow_id)

    # ------------------------------------------------------------------
    # Operator decisions

    async def approve(self, review: ReviewItem) -> None:
        await self.reviews.approve(review)

    async def reject(self, review: ReviewItem, retry_with_feedback: bool = False) -> None:
        await self.reviews.reject(review, retry_with_feedback)

    # ------------------------------------------------------------------
    # Housekeeping

    def sweep(self) -> List[str]:
        return self.store.sweep()

    async def wait_until_idle(self, workflow_id: Optional[str] = None) -> None:
        """Wait until no loop task is active (for one workflow, or for all)."""
        while True:
            if workflow_id is not None:
                task = self.sequencer.task_for(workflow_id)
                tasks = [task] if task is not None and not task.done() else []
            else:
                tasks = self.sequencer.active_tasks()
            if not tasks:
                break
            await asyncio.wait(tasks)
        await self.emitter.drain()

    async def shutdown(self) -> None:
        """Stop every running workflow and flush pending observer deliveries.

        Paused runs keep their pending review.
        """
        tasks = self.sequencer.active_tasks()
        for workflow_id in self.sequencer.active_workflow_ids():
            async with self.store.lock(workflow_id):
                logger.debug(f"Stopping workflow_id={workflow_id} for shutdown")
                self.sequencer.cancel(workflow_id)
                state = self.store.get(workflow_id)
                if state is not None:
                    state.is_running = False
        if tasks:
            await asyncio.wait(tasks)
        await self.wait_until_idle()

    async def _load(self, workflow_id: str) -> Workflow:
        workflow = await self.repository.get_workflow_by_id(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow
