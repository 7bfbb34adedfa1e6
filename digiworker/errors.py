"""Error taxonomy for the workflow execution engine."""

from __future__ import annotations

from typing import Optional


class DigiworkerError(Exception):
    """Base class for all engine errors."""


class WorkflowNotFound(DigiworkerError):
    """The repository has no workflow with the requested id."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class NotActivatable(DigiworkerError):
    """The workflow is not in ``active`` status and cannot be executed."""

    def __init__(self, workflow_id: str, status: str) -> None:
        super().__init__(
            f"Workflow {workflow_id} must be active to execute (status: {status})"
        )
        self.workflow_id = workflow_id
        self.status = status


class AlreadyRunning(DigiworkerError):
    """A run for this workflow is already in progress."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} is already running")
        self.workflow_id = workflow_id


class ReviewNotPending(DigiworkerError):
    """The review item was already consumed or never belonged to the current run."""

    def __init__(self, review_id: str, workflow_id: str) -> None:
        super().__init__(
            f"Review {review_id} is not pending for workflow {workflow_id}"
        )
        self.review_id = review_id
        self.workflow_id = workflow_id


class IllegalTransitionError(DigiworkerError, ValueError):
    pass


class StepError(DigiworkerError):
    """A recoverable per-step failure, surfaced to the operator as an error review."""


class DecisionTimeout(StepError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"Action decision timed out after {timeout:g}s")
        self.timeout = timeout


class MalformedDecision(StepError):
    """The decision service response could not be parsed into a decision."""


class UnknownActionType(StepError):
    def __init__(self, action_type: Optional[str]) -> None:
        super().__init__(f"Unknown action type: {action_type}")
        self.action_type = action_type


class IntegrationUnavailable(StepError):
    def __init__(self, integration: str, action_type: str) -> None:
        super().__init__(
            f"{integration} integration not available for action {action_type}"
        )
        self.integration = integration
        self.action_type = action_type


class ContentGenerationError(StepError):
    """Raised by content generation adapters; the executor only logs it."""
