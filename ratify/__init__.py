"""ratify: Multi-step approval workflows with routing and escalation."""

from .contracts import (
    ApprovalComment,
    BusinessObjectRef,
    Decision,
    InstanceStatus,
    StepExecution,
    StepStatus,
    StepTemplate,
    WorkflowDefinition,
    WorkflowInstance,
)
from .engine import BusinessObjectHook, WorkflowEngine
from .escalation import EscalationScheduler, SweepReport
from .notifications import NotificationDispatcher
from .persistence import get_repository
from .roster import InMemoryRoster
from .router import ApprovalRouter
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ApprovalComment",
    "ApprovalRouter",
    "BusinessObjectHook",
    "BusinessObjectRef",
    "Decision",
    "EscalationScheduler",
    "InMemoryRoster",
    "InstanceStatus",
    "NotificationDispatcher",
    "StepExecution",
    "StepStatus",
    "StepTemplate",
    "SweepReport",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowInstance",
    "get_repository",
    "get_transport",
]
