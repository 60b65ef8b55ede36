"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..clock import ensure_utc
from ..contracts import (
    ApprovalComment,
    StepExecution,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .models import apply_patch, next_definition_version
from .repository import WorkflowRepository


def _ts(value: datetime) -> float:
    return ensure_utc(value).timestamp()


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Rows keep the full model as JSON in ``body``; the indexed columns exist
    for filtering and for the compare-and-swap ``WHERE`` clause.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # one connection shared across worker threads
        self._write_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                status TEXT NOT NULL,
                due_ts REAL NOT NULL,
                version INTEGER NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_step_executions_status ON step_executions (status, due_ts)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_comments (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                step_execution_id TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Definitions
    def _save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._write_lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                SELECT body FROM workflow_definitions
                WHERE company_id = ? AND name = ?
                ORDER BY version DESC LIMIT 1
                """,
                (definition.company_id, definition.name),
            )
            row = cur.fetchone()
            latest = WorkflowDefinition.model_validate_json(row["body"]) if row else None
            stored = next_definition_version(definition, latest)
            cur.execute(
                "INSERT INTO workflow_definitions (id, version, company_id, name, is_active, body) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    stored.id,
                    stored.version,
                    stored.company_id,
                    stored.name,
                    int(stored.is_active),
                    stored.model_dump_json(),
                ),
            )
            self._conn.commit()
            return stored

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await asyncio.to_thread(self._save_definition, definition)

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM workflow_definitions WHERE id = ? ORDER BY version DESC LIMIT 1",
                definition_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM workflow_definitions WHERE id = ? AND version = ?",
                definition_id,
                version,
            )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(
        self, company_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT d.body, d.company_id, d.is_active FROM workflow_definitions d
            WHERE d.version = (
                SELECT MAX(version) FROM workflow_definitions WHERE id = d.id
            )
            ORDER BY d.name
            """,
        )
        return [
            WorkflowDefinition.model_validate_json(r["body"])
            for r in rows
            if (company_id is None or r["company_id"] == company_id)
            and (not active_only or r["is_active"])
        ]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: WorkflowInstance) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_instances (id, company_id, status, version, body) VALUES (?, ?, ?, ?, ?)",
            instance.id,
            instance.company_id,
            instance.status.value,
            instance.version,
            instance.model_dump_json(),
        )

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        return WorkflowInstance.model_validate_json(row["body"]) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        stored = instance.model_copy(update={"version": instance.version + 1})
        affected = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_instances SET status = ?, version = ?, body = ? WHERE id = ? AND version = ?",
            stored.status.value,
            stored.version,
            stored.model_dump_json(),
            stored.id,
            instance.version,
        )
        return stored if affected == 1 else None

    async def list_instances(
        self, company_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        if company_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT body FROM workflow_instances ORDER BY rowid"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM workflow_instances WHERE company_id = ? ORDER BY rowid",
                company_id,
            )
        return [WorkflowInstance.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Step executions
    async def create_step_execution(self, execution: StepExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_executions (id, instance_id, seq, status, due_ts, version, body)
            VALUES (?, ?, (SELECT COUNT(*) FROM step_executions), ?, ?, ?, ?)
            """,
            execution.id,
            execution.instance_id,
            execution.status.value,
            _ts(execution.due_at),
            execution.version,
            execution.model_dump_json(),
        )

    async def get_step_execution(self, step_execution_id: str) -> StepExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM step_executions WHERE id = ?",
            step_execution_id,
        )
        return StepExecution.model_validate_json(row["body"]) if row else None

    async def conditional_update_step_execution(
        self,
        step_execution_id: str,
        expected_version: int,
        patch: dict[str, Any],
        expected_status: StepStatus = StepStatus.PENDING,
    ) -> StepExecution | None:
        current = await self.get_step_execution(step_execution_id)
        if current is None or current.version != expected_version:
            return None
        updated = apply_patch(current, patch)
        affected = await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_executions SET status = ?, version = ?, body = ?
            WHERE id = ? AND status = ? AND version = ?
            """,
            updated.status.value,
            updated.version,
            updated.model_dump_json(),
            step_execution_id,
            StepStatus(expected_status).value,
            expected_version,
        )
        return updated if affected == 1 else None

    async def list_step_executions(self, instance_id: str) -> list[StepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM step_executions WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [StepExecution.model_validate_json(r["body"]) for r in rows]

    async def find_pending_step_executions(
        self, due_before: Optional[datetime] = None
    ) -> list[StepExecution]:
        if due_before is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM step_executions WHERE status = ? ORDER BY due_ts",
                StepStatus.PENDING.value,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM step_executions WHERE status = ? AND due_ts <= ? ORDER BY due_ts",
                StepStatus.PENDING.value,
                _ts(due_before),
            )
        return [StepExecution.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Comments
    async def add_comment(self, comment: ApprovalComment) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO approval_comments (id, instance_id, step_execution_id, body) VALUES (?, ?, ?, ?)",
            comment.id,
            comment.instance_id,
            comment.step_execution_id,
            comment.model_dump_json(),
        )

    async def list_comments(self, instance_id: str) -> list[ApprovalComment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM approval_comments WHERE instance_id = ? ORDER BY rowid",
            instance_id,
        )
        return [ApprovalComment.model_validate_json(r["body"]) for r in rows]

    def close(self) -> None:
        self._conn.close()
