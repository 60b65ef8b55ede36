from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Tuple

import pytest

from ratify.clock import FixedClock
from ratify.contracts import (
    BusinessObjectRef,
    InstanceStatus,
    StepTemplate,
    WorkflowDefinition,
)
from ratify.engine import WorkflowEngine
from ratify.notifications import NotificationDispatcher, RecordingNotificationSink
from ratify.persistence import InMemoryWorkflowRepository
from ratify.roster import InMemoryRoster
from ratify.router import ApprovalRouter

COMPANY = "acme"
T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
PO = BusinessObjectRef(type="purchase_order", id="PO-1")


class RecordingHook:
    """Business object hook that remembers every terminal call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[BusinessObjectRef, InstanceStatus]] = []

    async def on_instance_terminal(
        self, ref: BusinessObjectRef, final_status: InstanceStatus
    ) -> None:
        self.calls.append((ref, final_status))


def make_definition(steps: List[dict] | None = None, **overrides: Any) -> WorkflowDefinition:
    """Manager (role) -> Finance (role) -> Director (user u3) unless told otherwise."""
    if steps is None:
        steps = [
            {"name": "Manager review", "assignee_type": "role", "assignee": "manager"},
            {"name": "Finance review", "assignee_type": "role", "assignee": "finance"},
            {"name": "Director sign-off", "assignee_type": "user", "assignee": "u3"},
        ]
    fields = {
        "name": "Purchase approval",
        "company_id": COMPANY,
        "entity_type": "purchase_order",
        "trigger_type": "purchase_order_created",
        "steps": [StepTemplate(**s) for s in steps],
    }
    fields.update(overrides)
    return WorkflowDefinition(**fields)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def roster() -> InMemoryRoster:
    return InMemoryRoster(
        {
            COMPANY: {
                "manager": ["u1"],
                "finance": ["u2"],
                "director": ["u3"],
                "admin": ["boss"],
                "employee": ["requester"],
            }
        }
    )


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def hook() -> RecordingHook:
    return RecordingHook()


@pytest.fixture
def engine(repository, roster, sink, hook, clock) -> WorkflowEngine:
    return WorkflowEngine(
        repository,
        ApprovalRouter(roster),
        dispatcher=NotificationDispatcher([sink], max_attempts=1),
        hook=hook,
        clock=clock,
    )
