"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from typing import Dict

from ..contracts import Workflow, WorkflowStatus
from ..errors import WorkflowNotFound
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow documents in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Documents are copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}

    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow_by_id(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            raise WorkflowNotFound(workflow_id)
        wf.status = status

    async def delete_workflow(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]
