"""Repository abstraction for workflow definitions."""

from __future__ import annotations

from typing import Protocol

from ..contracts import Workflow, WorkflowStatus


class WorkflowRepository(Protocol):
    """Protocol for workflow definition storage backends."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow document."""

    async def get_workflow_by_id(self, workflow_id: str) -> Workflow | None:
        """Retrieve the workflow by id."""

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        """Persist a status transition."""

    async def delete_workflow(self, workflow_id: str) -> None:
        """Remove a workflow document."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all stored workflows."""
