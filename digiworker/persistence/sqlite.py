"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from ..contracts import Workflow, WorkflowStatus
from ..errors import WorkflowNotFound
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow documents as JSON rows keyed by workflow id."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        row = self._fetchone("SELECT document FROM workflows WHERE id = ?", workflow_id)
        if row is None:
            raise WorkflowNotFound(workflow_id)
        wf = Workflow.model_validate_json(row["document"])
        wf.status = status
        self._execute(
            "UPDATE workflows SET status = ?, document = ? WHERE id = ?",
            status.value,
            wf.to_json(),
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflows (id, status, document) VALUES (?, ?, ?)",
            workflow.id,
            workflow.status.value,
            workflow.to_json(),
        )

    async def get_workflow_by_id(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT document FROM workflows WHERE id = ?", workflow_id
        )
        if row is None:
            return None
        return Workflow.model_validate_json(row["document"])

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        await asyncio.to_thread(self._set_status, workflow_id, status)

    async def delete_workflow(self, workflow_id: str) -> None:
        await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM workflows ORDER BY id"
        )
        return [Workflow.model_validate_json(row["document"]) for row in rows]
