"""End-to-end workflow runs through the engine."""

import asyncio

import pytest

from digiworker.config import ApprovalPolicy
from digiworker.contracts import (
    ChatMessage,
    ControlRoomUpdateType,
    ReviewActionType,
    StepType,
    WorkflowStatus,
)
from digiworker.errors import (
    AlreadyRunning,
    NotActivatable,
    ReviewNotPending,
    WorkflowNotFound,
)
from digiworker.state import StepStatus

GUIDANCE_NEEDED = {
    "actions": [],
    "message": "I am not sure which mailbox to use",
    "needsGuidance": True,
    "guidanceQuestion": "Which account?",
}


class BlockingDecisionService:
    """Decision service that never answers until released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = False

    async def decide(self, step, blueprint, guidance_history, integrations):
        self.entered.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return {"actions": [{"type": "complete"}]}


def _user(text: str) -> ChatMessage:
    return ChatMessage(sender="user", text=text)


@pytest.mark.asyncio
async def test_gmail_workflow_runs_to_completion(harness, welcome, fake_email, send_welcome):
    email = fake_email()
    h = harness(send_welcome, email=email)

    await h.run(welcome())

    assert [u.type for u in h.updates] == [
        ControlRoomUpdateType.WORKFLOW_UPDATE,
        ControlRoomUpdateType.WORKFLOW_UPDATE,
        ControlRoomUpdateType.COMPLETED,
    ]
    assert h.messages() == [
        "Completed step: New customer signs up",
        "Completed step: Send welcome email",
        'Workflow "Onboarding" completed',
    ]
    assert email.sent == [("a@b.com", "Hi", "Welcome")]

    state = h.engine.get_execution_state("wf-1")
    assert state.is_running is False
    assert state.is_completed
    assert state.step_statuses == {
        "t": StepStatus.COMPLETED,
        "s1": StepStatus.COMPLETED,
        "e": StepStatus.COMPLETED,
    }
    assert "s1" in state.step_durations


@pytest.mark.asyncio
async def test_disabled_integration_surfaces_error_review_again_after_approval(
    harness, welcome, fake_email, send_welcome
):
    email = fake_email()
    h = harness(send_welcome, email=email)

    await h.run(welcome(gmail=False))

    reviews = h.of_type(ControlRoomUpdateType.REVIEW_NEEDED)
    assert len(reviews) == 1
    first = reviews[0].review_item
    assert first.action.type == ReviewActionType.ERROR
    assert first.action.payload["error_type"] == "IntegrationUnavailable"
    assert first.action.payload["step"] == "Send welcome email"
    assert reviews[0].message.startswith('Error in step "Send welcome email"')
    assert email.sent == []

    state = h.engine.get_execution_state("wf-1")
    assert state.is_running is False
    assert state.step_status("s1") == StepStatus.FAILED

    await h.engine.approve(first)
    await h.settle()

    reviews = h.of_type(ControlRoomUpdateType.REVIEW_NEEDED)
    assert len(reviews) == 2
    second = reviews[1].review_item
    assert second.id != first.id
    assert second.action == first.action
    assert len(h.service.calls) == 2
    assert h.of_type(ControlRoomUpdateType.COMPLETED) == []


@pytest.mark.asyncio
async def test_guidance_is_passed_to_the_retried_step(
    harness, workflow, step, complete_decision
):
    h = harness(GUIDANCE_NEEDED, complete_decision)

    await h.run(workflow(step("s1", "Sort the inbox", 1, gmail=True)))

    review = h.pending_review("wf-1")
    assert review.action.type == ReviewActionType.GUIDANCE_REQUESTED
    assert review.needs_guidance is True
    assert review.chat_history[-1].text == "Which account?"

    review.chat_history.append(_user("main account"))
    await h.engine.approve(review)
    await h.settle()

    assert len(h.service.calls) == 2
    retry = h.service.calls[1]
    assert retry.step.id == "s1"
    assert [m.text for m in retry.guidance if m.sender == "user"] == ["main account"]
    assert "Approved: guidance_requested" in h.messages()
    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1


@pytest.mark.asyncio
async def test_guidance_from_consecutive_pauses_keeps_chronological_order(
    harness, workflow, step, complete_decision
):
    second_question = dict(GUIDANCE_NEEDED, guidanceQuestion="Which label?")
    h = harness(GUIDANCE_NEEDED, second_question, complete_decision)

    await h.run(workflow(step("s1", "Sort the inbox", 1)))
    review = h.pending_review("wf-1")
    review.chat_history.append(_user("main account"))
    await h.engine.approve(review)
    await h.settle()

    review = h.pending_review("wf-1")
    assert review.chat_history[-1].text == "Which label?"
    review.chat_history.append(_user("use Finance"))
    await h.engine.approve(review)
    await h.settle()

    texts = [m.text for m in h.service.calls[2].guidance]
    assert texts.index("Which account?") < texts.index("main account")
    assert texts.index("main account") < texts.index("Which label?")
    assert texts.index("Which label?") < texts.index("use Finance")
    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1


@pytest.mark.asyncio
async def test_approval_checkpoint_moves_to_next_step(
    harness, welcome, fake_email, send_welcome
):
    email = fake_email()
    h = harness(
        send_welcome,
        email=email,
        approval_policy=ApprovalPolicy.DECISION_OR_BLUEPRINT_ACTIONS,
    )

    await h.run(welcome())

    review = h.pending_review("wf-1")
    assert review.action.type == ReviewActionType.APPROVAL_REQUIRED
    assert review.action.payload["actions"][0]["type"] == "send_email"
    assert "Action required for step: Send welcome email" in h.messages()

    await h.engine.approve(review)
    await h.settle()

    assert len(h.service.calls) == 1
    state = h.engine.get_execution_state("wf-1")
    assert state.step_status("s1") == StepStatus.COMPLETED
    assert state.is_completed


@pytest.mark.asyncio
async def test_decision_steps_always_need_approval(harness, workflow, step, complete_decision):
    h = harness(complete_decision)

    await h.run(
        workflow(
            step("d", "Is the invoice valid?", 1, StepType.DECISION),
            step("s2", "File it", 2),
        )
    )

    review = h.pending_review("wf-1")
    assert review.action.type == ReviewActionType.APPROVAL_REQUIRED
    assert review.step_id == "d"


@pytest.mark.asyncio
async def test_never_policy_skips_decision_approval(harness, workflow, step, complete_decision):
    h = harness(complete_decision, approval_policy=ApprovalPolicy.NEVER)

    await h.run(workflow(step("d", "Is the invoice valid?", 1, StepType.DECISION)))

    assert h.of_type(ControlRoomUpdateType.REVIEW_NEEDED) == []
    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1


@pytest.mark.asyncio
async def test_dismissing_a_review_changes_nothing_else(harness, workflow, step):
    h = harness(GUIDANCE_NEEDED)
    await h.run(workflow(step("s1", "Sort the inbox", 1), step("s2", "Archive", 2)))
    review = h.pending_review("wf-1")
    before = len(h.updates)

    await h.engine.reject(review)
    await h.settle()

    assert h.messages()[before:] == ["Rejected: guidance_requested"]
    state = h.engine.get_execution_state("wf-1")
    assert state.pending_review is None
    assert state.is_running is False
    assert state.current_step_index == 0
    assert state.step_status("s1") == StepStatus.DISMISSED
    assert len(h.service.calls) == 1

    with pytest.raises(ReviewNotPending):
        await h.engine.reject(review)


@pytest.mark.asyncio
async def test_reject_with_feedback_redoes_the_same_step(
    harness, workflow, step, complete_decision
):
    h = harness(complete_decision, approval_policy=ApprovalPolicy.ALWAYS)
    await h.run(workflow(step("s1", "Draft a reply", 1)))

    review = h.pending_review("wf-1")
    review.chat_history.append(_user("be more formal"))
    await h.engine.reject(review, retry_with_feedback=True)
    await h.settle()

    assert "Rejected with feedback: approval_required" in h.messages()
    retry = h.service.calls[1]
    assert retry.step.id == "s1"
    assert retry.guidance[0].sender == "system"
    assert "rejected" in retry.guidance[0].text
    assert retry.guidance[-1].text == "be more formal"
    assert h.pending_review("wf-1").step_id == "s1"


@pytest.mark.asyncio
async def test_reject_with_feedback_but_no_user_message_dismisses(
    harness, workflow, step, complete_decision
):
    h = harness(complete_decision, approval_policy=ApprovalPolicy.ALWAYS)
    await h.run(workflow(step("s1", "Draft a reply", 1)))

    await h.engine.reject(h.pending_review("wf-1"), retry_with_feedback=True)
    await h.settle()

    assert h.messages()[-1] == "Rejected: approval_required"
    assert len(h.service.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_run_the_step_once(harness, workflow, step, complete_decision):
    h = harness(GUIDANCE_NEEDED, complete_decision)
    await h.run(workflow(step("s1", "Sort the inbox", 1)))
    review = h.pending_review("wf-1")

    results = await asyncio.gather(
        *(h.engine.approve(review) for _ in range(3)), return_exceptions=True
    )
    await h.settle()

    assert sum(r is None for r in results) == 1
    assert sum(isinstance(r, ReviewNotPending) for r in results) == 2
    assert h.guard.peak == 1
    assert len(h.service.calls) == 2
    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1


@pytest.mark.asyncio
async def test_approve_racing_stop_and_start_keeps_one_step_in_flight(
    harness, workflow, step, complete_decision
):
    h = harness(GUIDANCE_NEEDED, complete_decision)
    await h.run(workflow(step("s1", "Sort the inbox", 1)))
    review = h.pending_review("wf-1")

    results = await asyncio.gather(
        h.engine.approve(review),
        h.engine.stop("wf-1"),
        h.engine.start("wf-1"),
        return_exceptions=True,
    )
    await h.settle()

    assert not [r for r in results if isinstance(r, Exception)]
    assert h.guard.peak == 1
    assert len(h.service.calls) == 2
    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1
    assert h.engine.get_execution_state("wf-1").is_completed


@pytest.mark.asyncio
async def test_workflows_run_side_by_side_one_step_each(
    harness, workflow, step, complete_decision
):
    h = harness(complete_decision)
    for workflow_id in ("wf-a", "wf-b"):
        await h.repository.save_workflow(
            workflow(
                step("s1", "Collect", 1),
                step("s2", "Check", 2),
                step("s3", "File", 3),
                workflow_id=workflow_id,
            )
        )

    await asyncio.gather(h.engine.start("wf-a"), h.engine.start("wf-b"))
    await h.settle()

    assert h.guard.peak == 1
    assert h.guard.overlap == 2
    assert len(h.service.calls) == 6
    assert sorted(u.workflow_id for u in h.of_type(ControlRoomUpdateType.COMPLETED)) == [
        "wf-a",
        "wf-b",
    ]


@pytest.mark.asyncio
async def test_steps_run_in_order_and_skip_sentinel_and_human_steps(
    harness, workflow, step, complete_decision
):
    h = harness(complete_decision)
    wf = workflow(
        step("e", "Done", 9, StepType.END),
        step("a2", "Send summary", 4),
        step("h", "Sign the contract", 3, human="Jordan"),
        step("a1", "Collect documents", 2),
        step("t", "Contract requested", 1, StepType.TRIGGER),
    )

    await h.run(wf)

    assert [call.step.id for call in h.service.calls] == ["a1", "a2"]
    assert h.messages() == [
        "Completed step: Contract requested",
        "Completed step: Collect documents",
        "Completed step: Sign the contract (handled by Jordan)",
        "Completed step: Send summary",
        'Workflow "Onboarding" completed',
    ]


@pytest.mark.asyncio
async def test_updates_are_attributed_to_the_digital_worker(
    harness, workflow, step, complete_decision
):
    h = harness(complete_decision)
    await h.run(
        workflow(step("a1", "Collect documents", 1), step("a2", "Reply", 2, agent="Milo")),
        digital_worker_name="Ava",
    )

    assert [u.digital_worker_name for u in h.updates] == ["Ava", "Milo", "Ava"]


@pytest.mark.asyncio
async def test_start_errors(harness, welcome, send_welcome):
    h = harness(send_welcome)

    with pytest.raises(WorkflowNotFound):
        await h.engine.start("missing")

    await h.repository.save_workflow(welcome(status=WorkflowStatus.DRAFT))
    with pytest.raises(NotActivatable):
        await h.engine.start("wf-1")

    await h.repository.set_status("wf-1", WorkflowStatus.PAUSED)
    with pytest.raises(NotActivatable):
        await h.engine.start("wf-1", auto_activate=True)


@pytest.mark.asyncio
async def test_auto_activate_starts_a_draft(harness, welcome, fake_email, send_welcome):
    h = harness(send_welcome, email=fake_email())

    await h.run(welcome(status=WorkflowStatus.DRAFT), auto_activate=True)

    stored = await h.repository.get_workflow_by_id("wf-1")
    assert stored.status == WorkflowStatus.ACTIVE
    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1


@pytest.mark.asyncio
async def test_stop_cancels_the_running_step(harness, workflow, step):
    blocking = BlockingDecisionService()
    h = harness(service=blocking)
    await h.repository.save_workflow(workflow(step("s1", "Slow step", 1)))

    await h.engine.start("wf-1")
    await blocking.entered.wait()
    with pytest.raises(AlreadyRunning):
        await h.engine.start("wf-1")
    task = h.engine.sequencer.task_for("wf-1")

    await h.engine.stop("wf-1", reason="operator request")
    await h.engine.stop("wf-1", reason="operator request")
    await asyncio.wait([task])
    await h.settle()

    assert task.cancelled()

    assert blocking.cancelled
    assert h.messages() == ["Workflow stopped: operator request"]
    state = h.engine.get_execution_state("wf-1")
    assert state.is_running is False
    assert state.pending_review is None


@pytest.mark.asyncio
async def test_restart_after_stop_begins_a_new_run(harness, workflow, step, complete_decision):
    h = harness(GUIDANCE_NEEDED, complete_decision)
    await h.run(workflow(step("s1", "Sort the inbox", 1)))
    stale = h.pending_review("wf-1")
    first_epoch = h.engine.get_execution_state("wf-1").epoch

    await h.engine.stop("wf-1")
    await h.engine.start("wf-1")
    await h.settle()

    state = h.engine.get_execution_state("wf-1")
    assert state.epoch > first_epoch
    assert state.is_completed
    with pytest.raises(ReviewNotPending):
        await h.engine.approve(stale)


@pytest.mark.asyncio
async def test_start_after_shutdown_begins_a_new_run(harness, workflow, step):
    blocking = BlockingDecisionService()
    h = harness(service=blocking)
    await h.repository.save_workflow(workflow(step("s1", "Slow step", 1)))
    await h.engine.start("wf-1")
    await blocking.entered.wait()

    await h.engine.shutdown()

    assert blocking.cancelled
    assert h.engine.get_execution_state("wf-1").is_running is False
    assert h.engine.sequencer.active_tasks() == []

    blocking.release.set()
    await h.engine.start("wf-1")
    await h.settle()

    assert h.engine.get_execution_state("wf-1").is_completed
    assert h.messages()[-1] == 'Workflow "Onboarding" completed'


@pytest.mark.asyncio
async def test_shutdown_keeps_pending_reviews(harness, workflow, step):
    h = harness(GUIDANCE_NEEDED)
    await h.run(workflow(step("s1", "Sort the inbox", 1)))

    await h.engine.shutdown()

    assert h.pending_review("wf-1").action.type == ReviewActionType.GUIDANCE_REQUESTED


@pytest.mark.asyncio
async def test_decision_timeout_becomes_an_error_review(harness, workflow, step):
    h = harness(service=BlockingDecisionService(), decision_timeout=0.01)

    await h.run(workflow(step("s1", "Slow step", 1)))

    review = h.pending_review("wf-1")
    assert review.action.type == ReviewActionType.ERROR
    assert review.action.payload["error_type"] == "DecisionTimeout"


@pytest.mark.asyncio
async def test_unknown_action_type_aborts_the_step(harness, workflow, step, fake_email):
    email = fake_email()
    h = harness(
        {
            "actions": [
                {"type": "send_email", "parameters": {"to": "x@y.z", "subject": "s", "body": "b"}},
                {"type": "launch_rockets"},
            ]
        },
        email=email,
    )

    await h.run(workflow(step("s1", "Mixed bag", 1, gmail=True)))

    review = h.pending_review("wf-1")
    assert review.action.payload["error_type"] == "UnknownActionType"
    assert email.sent == []


@pytest.mark.asyncio
async def test_failing_observer_does_not_stop_the_run(
    harness, welcome, fake_email, send_welcome
):
    h = harness(send_welcome, email=fake_email())

    def broken(update):
        raise RuntimeError("observer down")

    async def broken_async(update):
        raise RuntimeError("async observer down")

    h.engine.subscribe(broken)
    h.engine.subscribe(broken_async)
    await h.run(welcome())

    assert len(h.of_type(ControlRoomUpdateType.COMPLETED)) == 1


@pytest.mark.asyncio
async def test_unsubscribed_observer_receives_nothing(
    harness, welcome, fake_email, send_welcome
):
    h = harness(send_welcome, email=fake_email())
    received = []
    unsubscribe = h.engine.subscribe(received.append)
    unsubscribe()

    await h.run(welcome())

    assert received == []
    assert len(h.updates) == 3


@pytest.mark.asyncio
async def test_sweep_and_delete(harness, welcome, fake_email, send_welcome):
    h = harness(send_welcome, email=fake_email())
    await h.run(welcome())

    assert h.engine.sweep() == ["wf-1"]
    assert h.engine.get_execution_state("wf-1") is None

    await h.engine.delete_workflow("wf-1")
    assert await h.repository.get_workflow_by_id("wf-1") is None


@pytest.mark.asyncio
async def test_activate_and_shutdown(harness, welcome, send_welcome):
    h = harness(send_welcome)
    await h.repository.save_workflow(welcome(status=WorkflowStatus.PAUSED))

    activated = await h.engine.activate("wf-1")

    assert activated.status == WorkflowStatus.ACTIVE
    await h.engine.shutdown()
    assert h.engine.sequencer.active_tasks() == []
