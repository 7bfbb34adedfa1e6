"""Shared fakes and builders for engine tests."""

from __future__ import annotations

import asyncio
from collections import Counter
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from digiworker import CapabilityExecutor, WorkflowEngine
from digiworker.config import ApprovalPolicy, EngineConfig
from digiworker.contracts import (
    Blueprint,
    ControlRoomUpdate,
    ControlRoomUpdateType,
    Integrations,
    ReviewItem,
    Step,
    StepAssignment,
    StepRequirements,
    StepType,
    Workflow,
    WorkflowStatus,
)
from digiworker.decision import ActionDecisionClient
from digiworker.persistence import InMemoryWorkflowRepository


class ScriptedDecisionService:
    """Returns queued responses in order; the last one repeats once the queue is drained."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[SimpleNamespace] = []

    async def decide(self, step, blueprint, guidance_history, integrations):
        self.calls.append(
            SimpleNamespace(
                step=step,
                blueprint=blueprint,
                guidance=list(guidance_history),
                integrations=integrations,
            )
        )
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEmail:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.sent: list[tuple[str, str, str]] = []
        self.labels: list[tuple[str, str]] = []
        self.inbox = [{"id": "m1", "from": "boss@example.com", "subject": "Report"}]

    async def is_connected(self) -> bool:
        return self.connected

    async def send(self, to: str, subject: str, body: str) -> str:
        self.sent.append((to, subject, body))
        return f"sent-{len(self.sent)}"

    async def read_recent(self, n: int) -> list[dict[str, Any]]:
        return self.inbox[:n]

    async def modify_labels(self, email_id: str, label: str) -> None:
        self.labels.append((email_id, label))


class FakeImages:
    def __init__(self, asset: str = "data:image/png;base64,AAAA", error: Exception | None = None):
        self.asset = asset
        self.error = error
        self.prompts: list[tuple[str, Optional[str]]] = []

    async def generate(self, prompt: str, context_text: Optional[str] = None) -> str:
        self.prompts.append((prompt, context_text))
        if self.error is not None:
            raise self.error
        return self.asset


class InFlightGuard:
    """Wraps a ``CapabilityExecutor`` and records how many steps each run has in flight.

    Loop tasks are named ``workflow-<id>``, so the current task name identifies
    the workflow. Control is yielded once inside the guard so that any second
    caller for the same workflow would overlap.
    """

    def __init__(self, executor: CapabilityExecutor) -> None:
        self._executor = executor
        self.in_flight: Counter[str] = Counter()
        self.peak = 0
        self.overlap = 0

    async def execute_step(self, step, guidance_history):
        key = asyncio.current_task().get_name()
        self.in_flight[key] += 1
        self.peak = max(self.peak, self.in_flight[key])
        self.overlap = max(self.overlap, sum(self.in_flight.values()))
        try:
            await asyncio.sleep(0)
            return await self._executor.execute_step(step, guidance_history)
        finally:
            self.in_flight[key] -= 1


class EngineHarness:
    """A ``WorkflowEngine`` with scripted collaborators and a recorded update stream."""

    def __init__(
        self,
        *responses: Any,
        service: Any = None,
        email: Any = None,
        content_generator: Any = None,
        approval_policy: ApprovalPolicy = ApprovalPolicy.DECISION_ONLY,
        decision_timeout: float = 5.0,
    ) -> None:
        self.service = service or ScriptedDecisionService(*responses)
        self.repository = InMemoryWorkflowRepository()
        self.guard = InFlightGuard(
            CapabilityExecutor(
                ActionDecisionClient(self.service, timeout=decision_timeout),
                email=email,
                content_generator=content_generator,
            )
        )
        self.engine = WorkflowEngine(
            self.repository,
            self.guard,
            config=EngineConfig(
                step_delay=0,
                decision_timeout=decision_timeout,
                approval_policy=approval_policy,
            ),
        )
        self.updates: list[ControlRoomUpdate] = []
        self.engine.subscribe(self.updates.append)

    async def run(self, workflow: Workflow, **start_kwargs: Any) -> None:
        await self.repository.save_workflow(workflow)
        await self.engine.start(workflow.id, **start_kwargs)
        await self.engine.wait_until_idle()

    async def settle(self) -> None:
        await self.engine.wait_until_idle()

    def of_type(self, update_type: ControlRoomUpdateType) -> list[ControlRoomUpdate]:
        return [u for u in self.updates if u.type == update_type]

    def messages(self) -> list[str]:
        return [u.message for u in self.updates]

    def pending_review(self, workflow_id: str) -> ReviewItem:
        state = self.engine.get_execution_state(workflow_id)
        assert state is not None and state.pending_review is not None
        return state.pending_review


def build_step(
    step_id: str,
    label: str,
    order: int,
    step_type: StepType = StepType.ACTION,
    *,
    gmail: bool = False,
    green_list: Optional[list[str]] = None,
    human: Optional[str] = None,
    agent: Optional[str] = None,
    excel_data: Optional[str] = None,
) -> Step:
    assigned_to = None
    if human:
        assigned_to = StepAssignment(type="human", human_name=human)
    elif agent:
        assigned_to = StepAssignment(type="ai", agent_name=agent)
    return Step(
        id=step_id,
        label=label,
        type=step_type,
        order=order,
        assigned_to=assigned_to,
        requirements=StepRequirements(
            blueprint=Blueprint(green_list=green_list or []),
            integrations=Integrations(gmail=gmail),
            excel_data=excel_data,
        ),
    )


def build_workflow(
    *steps: Step,
    workflow_id: str = "wf-1",
    name: str = "Onboarding",
    status: WorkflowStatus = WorkflowStatus.ACTIVE,
) -> Workflow:
    return Workflow(id=workflow_id, name=name, steps=list(steps), status=status)


def welcome_workflow(*, gmail: bool = True, **kwargs: Any) -> Workflow:
    return build_workflow(
        build_step("t", "New customer signs up", 0, StepType.TRIGGER),
        build_step("s1", "Send welcome email", 1, gmail=gmail, green_list=["send email"]),
        build_step("e", "Done", 2, StepType.END),
        **kwargs,
    )


SEND_WELCOME = {
    "actions": [
        {
            "type": "send_email",
            "parameters": {"to": "a@b.com", "subject": "Hi", "body": "Welcome"},
        }
    ],
    "message": "done",
    "needsGuidance": False,
}

COMPLETE = {"actions": [{"type": "complete"}], "message": "all good"}


@pytest.fixture
def harness():
    """Factory for ``EngineHarness`` instances."""
    return EngineHarness


@pytest.fixture
def step():
    return build_step


@pytest.fixture
def workflow():
    return build_workflow


@pytest.fixture
def welcome():
    return welcome_workflow


@pytest.fixture
def fake_email():
    return FakeEmail


@pytest.fixture
def fake_images():
    return FakeImages


@pytest.fixture
def send_welcome():
    return SEND_WELCOME


@pytest.fixture
def complete_decision():
    return COMPLETE
