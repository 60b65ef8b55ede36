"""Core data contracts for the ratify approval workflow engine."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .triggers import TriggerConditions

MAX_WORKFLOW_STEPS = 20

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd])\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}
_DEFINITION_NAME_RE = re.compile(r"^[a-zA-Z0-9\s\-_]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def parse_duration(value: Any) -> Any:
    """Accept ``"24h"``-style shorthand on top of what pydantic parses."""
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            amount, unit = match.groups()
            return timedelta(**{_DURATION_UNITS[unit]: float(amount)})
    return value


class InstanceStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_INSTANCE_STATUSES: frozenset[InstanceStatus] = frozenset(
    {
        InstanceStatus.APPROVED,
        InstanceStatus.REJECTED,
        InstanceStatus.EXPIRED,
        InstanceStatus.CANCELLED,
    }
)


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REQUESTED_CHANGES = "requested_changes"
    REASSIGNED = "reassigned"
    ORPHANED = "orphaned"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Only these edges are legal. Anything missing is terminal.
STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {
            StepStatus.APPROVED,
            StepStatus.REJECTED,
            StepStatus.REQUESTED_CHANGES,
            StepStatus.REASSIGNED,
            StepStatus.ORPHANED,
            StepStatus.EXPIRED,
            StepStatus.CANCELLED,
        }
    ),
    StepStatus.ORPHANED: frozenset({StepStatus.REASSIGNED, StepStatus.CANCELLED}),
}


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    """Return ``True`` if ``current -> target`` is a legal step transition."""
    return target in STEP_TRANSITIONS.get(current, frozenset())


class Decision(str, Enum):
    """Decisions an approver can submit."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"


DECISION_OUTCOMES: dict[Decision, StepStatus] = {
    Decision.APPROVE: StepStatus.APPROVED,
    Decision.REJECT: StepStatus.REJECTED,
    Decision.REQUEST_CHANGES: StepStatus.REQUESTED_CHANGES,
}


class EventKind(str, Enum):
    """Notification events emitted on state transitions."""

    APPROVAL_REQUEST = "approval_request"
    APPROVAL_REMINDER = "approval_reminder"
    APPROVAL_URGENT_REMINDER = "approval_urgent_reminder"
    APPROVAL_REASSIGNED = "approval_reassigned"
    APPROVAL_ORPHANED = "approval_orphaned"
    APPROVAL_COMPLETED = "approval_completed"
    APPROVAL_EXPIRED = "approval_expired"


class AssigneeType(str, Enum):
    USER = "user"
    ROLE = "role"
    CREATOR = "creator"
    ADMIN = "admin"


class EscalationLevel(IntEnum):
    """Escalation stages, ordered. Stored per step execution."""

    NONE = 0
    REMINDER = 1
    URGENT = 2
    EXPIRED = 3


class RequestChangesPolicy(str, Enum):
    """What happens to a step after ``request_changes``."""

    AWAIT_RESUBMISSION = "await_resubmission"
    REOPEN_STEP = "reopen_step"


class EscalationPolicy(BaseModel):
    """Timing of reminders and expiry relative to a step's ``due_at``.

    A reminder fires at ``due_at``, an urgent reminder ``urgent_window``
    before the final deadline and the step expires at
    ``due_at + grace_period``.
    """

    grace_period: timedelta = timedelta(hours=48)
    urgent_window: timedelta = timedelta(hours=24)

    @field_validator("grace_period", "urgent_window", mode="before")
    @classmethod
    def _parse_windows(cls, v: Any) -> Any:
        return parse_duration(v)

    @model_validator(mode="after")
    def _check_windows(self) -> "EscalationPolicy":
        if self.grace_period < timedelta(0) or self.urgent_window < timedelta(0):
            raise ValueError("escalation windows must not be negative")
        if self.urgent_window > self.grace_period:
            raise ValueError("urgent_window cannot exceed grace_period")
        return self

    def urgent_at(self, due_at: datetime) -> datetime:
        return self.expires_at(due_at) - self.urgent_window

    def expires_at(self, due_at: datetime) -> datetime:
        return due_at + self.grace_period

    def level_at(self, due_at: datetime, now: datetime) -> EscalationLevel:
        """Highest escalation level reached at ``now``."""
        if now >= self.expires_at(due_at):
            return EscalationLevel.EXPIRED
        if now >= self.urgent_at(due_at):
            return EscalationLevel.URGENT
        if now >= due_at:
            return EscalationLevel.REMINDER
        return EscalationLevel.NONE


class StepTemplate(BaseModel):
    """One approval step of a workflow definition."""

    model_config = {"frozen": True}

    name: str = Field(min_length=1, max_length=100)
    assignee_type: AssigneeType
    assignee: Optional[str] = Field(
        default=None, description="User id or role name, depending on assignee_type"
    )
    timeout: timedelta = timedelta(hours=24)
    escalation: EscalationPolicy = Field(default_factory=EscalationPolicy)
    auto_approve: bool = False
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v: Any) -> Any:
        return parse_duration(v)

    @model_validator(mode="after")
    def _check_assignee(self) -> "StepTemplate":
        if self.assignee_type in (AssigneeType.USER, AssigneeType.ROLE) and not self.assignee:
            raise ValueError(
                f"step '{self.name}' needs an assignee for type {self.assignee_type.value}"
            )
        if self.timeout <= timedelta(0):
            raise ValueError(f"step '{self.name}' timeout must be positive")
        return self


class WorkflowDefinition(BaseModel):
    """A named, versioned chain of approval steps.

    Definitions are frozen. Editing one means saving a new version; running
    instances keep the ``(id, version)`` they were started with.
    """

    model_config = {"frozen": True}

    id: str = Field(default_factory=_new_id)
    name: str = Field(min_length=1, max_length=100)
    version: int = 1
    company_id: str
    entity_type: str = "custom"
    trigger_type: str = "manual"
    trigger_conditions: Optional[TriggerConditions] = None
    is_active: bool = True
    request_changes_policy: RequestChangesPolicy = RequestChangesPolicy.AWAIT_RESUBMISSION
    steps: List[StepTemplate] = Field(min_length=1, max_length=MAX_WORKFLOW_STEPS)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not _DEFINITION_NAME_RE.match(v):
            raise ValueError(
                "name may only contain letters, numbers, spaces, hyphens and underscores"
            )
        return v

    @field_validator("steps")
    @classmethod
    def _unique_step_names(cls, steps: List[StepTemplate]) -> List[StepTemplate]:
        names = [s.name.strip().lower() for s in steps]
        if len(names) != len(set(names)):
            raise ValueError("step names must be unique")
        return steps

    def step(self, index: int) -> StepTemplate:
        return self.steps[index]

    def is_last_step(self, index: int) -> bool:
        return index == len(self.steps) - 1


class BusinessObjectRef(BaseModel):
    """Weak reference to the business object an instance approves."""

    model_config = {"frozen": True}

    type: str
    id: str

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


class WorkflowInstance(BaseModel):
    """One running execution of a definition against a business object."""

    id: str = Field(default_factory=_new_id)
    definition_id: str
    definition_version: int
    company_id: str
    business_object: BusinessObjectRef
    triggered_by: str
    data: Dict[str, Any] = Field(default_factory=dict)
    current_step_index: int = 0
    status: InstanceStatus = InstanceStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES


class StepExecution(BaseModel):
    """Assignment and outcome of one step of an instance.

    ``due_at`` is fixed at creation. ``version`` grows by one on every
    persisted change and guards concurrent transitions.
    """

    id: str = Field(default_factory=_new_id)
    instance_id: str
    company_id: str
    step_index: int
    step_name: str
    assigned_role: Optional[str] = None
    assigned_user_id: Optional[str] = None
    candidates: List[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    decision: Optional[Decision] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    due_at: datetime
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    escalation_level: EscalationLevel = EscalationLevel.NONE
    reassigned_from: Optional[str] = None
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status is StepStatus.PENDING

    @property
    def recipients(self) -> List[str]:
        """Users who should hear about this step."""
        if self.assigned_user_id:
            return [self.assigned_user_id]
        return list(self.candidates)


class ApprovalComment(BaseModel):
    """Remark left on a step execution.

    Internal comments are meant for approvers only and are hidden from the
    requester's view.
    """

    id: str = Field(default_factory=_new_id)
    step_execution_id: str
    instance_id: str
    company_id: str
    author_id: str
    text: str = Field(min_length=1, max_length=2000)
    internal: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class Assignment(BaseModel):
    """Router output: who must act on a step."""

    assigned_user_id: Optional[str] = None
    assigned_role: Optional[str] = None
    candidates: List[str] = Field(default_factory=list)


class InstanceState(BaseModel):
    """Read model returned by ``WorkflowEngine.get_instance_state``."""

    instance: WorkflowInstance
    definition_name: str
    step_count: int
    steps: List[StepExecution] = Field(default_factory=list)

    @property
    def active_step(self) -> Optional[StepExecution]:
        for step in self.steps:
            if step.is_pending:
                return step
        return None


class ApprovalEvent(BaseModel):
    """Envelope pushed over the live event stream."""

    event_id: str = Field(default_factory=_new_id)
    kind: EventKind
    company_id: str
    occurred_at: datetime = Field(default_factory=_utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    @property
    def topic(self) -> str:
        return event_topic(self.company_id)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "ApprovalEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


def event_topic(company_id: str) -> str:
    """Live event topic for a company."""
    return f"approvals.{company_id}"
