"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..contracts import (
    ApprovalComment,
    StepExecution,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .models import apply_patch, next_definition_version
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, List[WorkflowDefinition]] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._executions: Dict[str, StepExecution] = {}
        self._comments: List[ApprovalComment] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        async with self._lock:
            latest = self._latest_by_name(definition.company_id, definition.name)
            stored = next_definition_version(definition, latest)
            self._definitions.setdefault(stored.id, []).append(stored)
            return stored

    def _latest_by_name(self, company_id: str, name: str) -> WorkflowDefinition | None:
        for versions in self._definitions.values():
            latest = versions[-1]
            if latest.company_id == company_id and latest.name == name:
                return latest
        return None

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        versions = self._definitions.get(definition_id)
        if not versions:
            return None
        if version is None:
            return versions[-1]
        for definition in versions:
            if definition.version == version:
                return definition
        return None

    async def list_definitions(
        self, company_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        latest = [versions[-1] for versions in self._definitions.values()]
        return [
            d
            for d in latest
            if (company_id is None or d.company_id == company_id)
            and (not active_only or d.is_active)
        ]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        async with self._lock:
            if instance.id in self._instances:
                raise ValueError(f"Instance already exists: {instance.id}")
            self._instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        async with self._lock:
            current = self._instances.get(instance.id)
            if current is None or current.version != instance.version:
                return None
            stored = instance.model_copy(update={"version": instance.version + 1}, deep=True)
            self._instances[instance.id] = stored
            return stored.model_copy(deep=True)

    async def list_instances(
        self, company_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if company_id is None or i.company_id == company_id
        ]

    # ------------------------------------------------------------------
    async def create_step_execution(self, execution: StepExecution) -> None:
        async with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Step execution already exists: {execution.id}")
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_step_execution(self, step_execution_id: str) -> StepExecution | None:
        execution = self._executions.get(step_execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def conditional_update_step_execution(
        self,
        step_execution_id: str,
        expected_version: int,
        patch: dict[str, Any],
        expected_status: StepStatus = StepStatus.PENDING,
    ) -> StepExecution | None:
        async with self._lock:
            current = self._executions.get(step_execution_id)
            if (
                current is None
                or current.status != expected_status
                or current.version != expected_version
            ):
                return None
            updated = apply_patch(current, patch)
            self._executions[step_execution_id] = updated
            return updated.model_copy(deep=True)

    async def list_step_executions(self, instance_id: str) -> list[StepExecution]:
        # dict preserves insertion order, which is creation order
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.instance_id == instance_id
        ]

    async def find_pending_step_executions(
        self, due_before: Optional[datetime] = None
    ) -> list[StepExecution]:
        pending = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.is_pending and (due_before is None or e.due_at <= due_before)
        ]
        return sorted(pending, key=lambda e: e.due_at)

    # ------------------------------------------------------------------
    async def add_comment(self, comment: ApprovalComment) -> None:
        async with self._lock:
            self._comments.append(comment.model_copy(deep=True))

    async def list_comments(self, instance_id: str) -> list[ApprovalComment]:
        return [c.model_copy(deep=True) for c in self._comments if c.instance_id == instance_id]
