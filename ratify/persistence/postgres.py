"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import (
    ApprovalComment,
    StepExecution,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .models import apply_patch, next_definition_version
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                created_seq BIGSERIAL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                seq BIGSERIAL,
                status TEXT NOT NULL,
                due_at TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_step_executions_status ON step_executions (status, due_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_comments (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                step_execution_id TEXT NOT NULL,
                seq BIGSERIAL,
                body JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT body::text AS body FROM workflow_definitions
                    WHERE company_id = $1 AND name = $2
                    ORDER BY version DESC LIMIT 1
                    FOR UPDATE
                    """,
                    definition.company_id,
                    definition.name,
                )
                latest = (
                    WorkflowDefinition.model_validate_json(row["body"]) if row else None
                )
                stored = next_definition_version(definition, latest)
                await conn.execute(
                    "INSERT INTO workflow_definitions (id, version, company_id, name, is_active, body) VALUES ($1, $2, $3, $4, $5, $6::jsonb)",
                    stored.id,
                    stored.version,
                    stored.company_id,
                    stored.name,
                    stored.is_active,
                    stored.model_dump_json(),
                )
        finally:
            await conn.close()
        return stored

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            if version is None:
                row = await conn.fetchrow(
                    "SELECT body::text AS body FROM workflow_definitions WHERE id = $1 ORDER BY version DESC LIMIT 1",
                    definition_id,
                )
            else:
                row = await conn.fetchrow(
                    "SELECT body::text AS body FROM workflow_definitions WHERE id = $1 AND version = $2",
                    definition_id,
                    version,
                )
        finally:
            await conn.close()
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(
        self, company_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT DISTINCT ON (id) body::text AS body, company_id, is_active
                FROM workflow_definitions
                ORDER BY id, version DESC
                """
            )
        finally:
            await conn.close()
        return [
            WorkflowDefinition.model_validate_json(r["body"])
            for r in rows
            if (company_id is None or r["company_id"] == company_id)
            and (not active_only or r["is_active"])
        ]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflow_instances (id, company_id, status, version, body) VALUES ($1, $2, $3, $4, $5::jsonb)",
                instance.id,
                instance.company_id,
                instance.status.value,
                instance.version,
                instance.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body::text AS body FROM workflow_instances WHERE id = $1",
                instance_id,
            )
        finally:
            await conn.close()
        return WorkflowInstance.model_validate_json(row["body"]) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        stored = instance.model_copy(update={"version": instance.version + 1})
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_instances SET status = $1, version = $2, body = $3::jsonb WHERE id = $4 AND version = $5",
                stored.status.value,
                stored.version,
                stored.model_dump_json(),
                stored.id,
                instance.version,
            )
        finally:
            await conn.close()
        return stored if result.endswith(" 1") else None

    async def list_instances(
        self, company_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        conn = await self._connect()
        try:
            if company_id is None:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM workflow_instances ORDER BY created_seq"
                )
            else:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM workflow_instances WHERE company_id = $1 ORDER BY created_seq",
                    company_id,
                )
        finally:
            await conn.close()
        return [WorkflowInstance.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_step_execution(self, execution: StepExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO step_executions (id, instance_id, status, due_at, version, body) VALUES ($1, $2, $3, $4, $5, $6::jsonb)",
                execution.id,
                execution.instance_id,
                execution.status.value,
                execution.due_at,
                execution.version,
                execution.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_step_execution(self, step_execution_id: str) -> StepExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body::text AS body FROM step_executions WHERE id = $1",
                step_execution_id,
            )
        finally:
            await conn.close()
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
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE step_executions SET status = $1, version = $2, body = $3::jsonb
                WHERE id = $4 AND status = $5 AND version = $6
                """,
                updated.status.value,
                updated.version,
                updated.model_dump_json(),
                step_execution_id,
                StepStatus(expected_status).value,
                expected_version,
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return updated if result.endswith(" 1") else None

    async def list_step_executions(self, instance_id: str) -> list[StepExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body::text AS body FROM step_executions WHERE instance_id = $1 ORDER BY seq",
                instance_id,
            )
        finally:
            await conn.close()
        return [StepExecution.model_validate_json(r["body"]) for r in rows]

    async def find_pending_step_executions(
        self, due_before: Optional[datetime] = None
    ) -> list[StepExecution]:
        conn = await self._connect()
        try:
            if due_before is None:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM step_executions WHERE status = $1 ORDER BY due_at",
                    StepStatus.PENDING.value,
                )
            else:
                rows = await conn.fetch(
                    "SELECT body::text AS body FROM step_executions WHERE status = $1 AND due_at <= $2 ORDER BY due_at",
                    StepStatus.PENDING.value,
                    due_before,
                )
        finally:
            await conn.close()
        return [StepExecution.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def add_comment(self, comment: ApprovalComment) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO approval_comments (id, instance_id, step_execution_id, body) VALUES ($1, $2, $3, $4::jsonb)",
                comment.id,
                comment.instance_id,
                comment.step_execution_id,
                comment.model_dump_json(),
            )
        finally:
            await conn.close()

    async def list_comments(self, instance_id: str) -> list[ApprovalComment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body::text AS body FROM approval_comments WHERE instance_id = $1 ORDER BY seq",
                instance_id,
            )
        finally:
            await conn.close()
        return [ApprovalComment.model_validate_json(r["body"]) for r in rows]
