"""Repository abstraction for approval workflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from ..contracts import (
    ApprovalComment,
    StepExecution,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every method is a single short transaction. Step executions change only
    through ``conditional_update_step_execution`` and instances only through
    the version-checked ``update_instance``.
    """

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Persist a definition.

        A definition whose name already exists in the company is stored as
        the next version under the existing id.
        """

    async def get_definition(
        self, definition_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        """Return the given version, or the latest one when ``version`` is None."""

    async def list_definitions(
        self, company_id: Optional[str] = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        """Return the latest version of each definition."""

    async def create_instance(self, instance: WorkflowInstance) -> None:
        """Persist a new workflow instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def update_instance(self, instance: WorkflowInstance) -> WorkflowInstance | None:
        """Store ``instance`` only if the row is still at ``instance.version``.

        Returns the stored row with ``version`` incremented, or ``None`` when
        the instance is unknown or another writer changed it first.
        """

    async def list_instances(
        self, company_id: Optional[str] = None
    ) -> list[WorkflowInstance]:
        """Return all persisted instances."""

    async def create_step_execution(self, execution: StepExecution) -> None:
        """Persist a new step execution."""

    async def get_step_execution(self, step_execution_id: str) -> StepExecution | None:
        """Retrieve a step execution by id."""

    async def conditional_update_step_execution(
        self,
        step_execution_id: str,
        expected_version: int,
        patch: dict[str, Any],
        expected_status: StepStatus = StepStatus.PENDING,
    ) -> StepExecution | None:
        """Apply ``patch`` only if status and version still match.

        Returns the updated execution with ``version`` incremented, or
        ``None`` when another writer got there first.
        """

    async def list_step_executions(self, instance_id: str) -> list[StepExecution]:
        """Return the executions of an instance ordered by creation."""

    async def find_pending_step_executions(
        self, due_before: Optional[datetime] = None
    ) -> list[StepExecution]:
        """Return pending executions, optionally only those due by ``due_before``."""

    async def add_comment(self, comment: ApprovalComment) -> None:
        """Persist a comment on a step execution."""

    async def list_comments(self, instance_id: str) -> list[ApprovalComment]:
        """Return the comments on an instance's executions, oldest first."""
