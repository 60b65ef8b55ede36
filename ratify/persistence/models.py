"""Helpers shared by the persistence backends."""

from __future__ import annotations

from typing import Any

from ..contracts import StepExecution, WorkflowDefinition

# Set once when the execution is created; patches may never touch them.
IMMUTABLE_STEP_FIELDS = frozenset(
    {"id", "instance_id", "company_id", "step_index", "step_name", "created_at", "due_at", "version"}
)


def check_patch(patch: dict[str, Any]) -> None:
    """Reject patches that try to rewrite immutable step fields."""
    forbidden = IMMUTABLE_STEP_FIELDS.intersection(patch)
    if forbidden:
        raise ValueError(f"Cannot patch immutable step fields: {sorted(forbidden)}")


def apply_patch(execution: StepExecution, patch: dict[str, Any]) -> StepExecution:
    """Return a validated copy of ``execution`` with ``patch`` applied."""
    check_patch(patch)
    data = execution.model_dump()
    data.update(patch)
    data["version"] = execution.version + 1
    return StepExecution.model_validate(data)


def next_definition_version(
    definition: WorkflowDefinition, latest: WorkflowDefinition | None
) -> WorkflowDefinition:
    """Stamp ``definition`` as a new version of ``latest`` if one exists."""
    if latest is None:
        return definition.model_copy(update={"version": 1})
    return definition.model_copy(
        update={"id": latest.id, "version": latest.version + 1}
    )
