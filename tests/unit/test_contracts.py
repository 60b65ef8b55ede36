"""Tests for workflow contracts and validation."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import T0, make_definition
from ratify.contracts import (
    ApprovalComment,
    ApprovalEvent,
    EscalationLevel,
    EscalationPolicy,
    EventKind,
    StepExecution,
    StepStatus,
    StepTemplate,
    can_transition,
    event_topic,
    parse_duration,
)


def test_parse_duration_shorthand():
    assert parse_duration("24h") == timedelta(hours=24)
    assert parse_duration("30m") == timedelta(minutes=30)
    assert parse_duration("2d") == timedelta(days=2)
    assert parse_duration(3600) == 3600


def test_escalation_levels_over_time():
    policy = EscalationPolicy()
    due = T0

    assert policy.level_at(due, due - timedelta(seconds=1)) is EscalationLevel.NONE
    assert policy.level_at(due, due) is EscalationLevel.REMINDER
    assert policy.urgent_at(due) == due + timedelta(hours=24)
    assert policy.level_at(due, due + timedelta(hours=24)) is EscalationLevel.URGENT
    assert policy.expires_at(due) == due + timedelta(hours=48)
    assert policy.level_at(due, due + timedelta(hours=48)) is EscalationLevel.EXPIRED


def test_escalation_policy_rejects_inconsistent_windows():
    with pytest.raises(ValidationError):
        EscalationPolicy(grace_period="1h", urgent_window="2h")


def test_step_template_requires_assignee_for_user_and_role():
    with pytest.raises(ValidationError):
        StepTemplate(name="Review", assignee_type="role")
    with pytest.raises(ValidationError):
        StepTemplate(name="Review", assignee_type="user", assignee="u1", timeout="0h")

    admin_step = StepTemplate(name="Review", assignee_type="admin", timeout="12h")
    assert admin_step.timeout == timedelta(hours=12)


def test_definition_validation():
    with pytest.raises(ValidationError):
        make_definition(name="bad/name!")
    with pytest.raises(ValidationError):
        make_definition(steps=[])
    with pytest.raises(ValidationError):
        make_definition(
            [
                {"name": "Review", "assignee_type": "role", "assignee": "manager"},
                {"name": "review", "assignee_type": "role", "assignee": "finance"},
            ]
        )
    too_many = [
        {"name": f"Step {i}", "assignee_type": "role", "assignee": "manager"}
        for i in range(21)
    ]
    with pytest.raises(ValidationError):
        make_definition(too_many)


def test_definition_is_frozen():
    definition = make_definition()
    assert definition.is_last_step(2)
    assert not definition.is_last_step(1)
    with pytest.raises(ValidationError):
        definition.name = "Renamed"


def test_step_transitions():
    assert can_transition(StepStatus.PENDING, StepStatus.APPROVED)
    assert can_transition(StepStatus.PENDING, StepStatus.CANCELLED)
    assert can_transition(StepStatus.ORPHANED, StepStatus.REASSIGNED)
    assert can_transition(StepStatus.ORPHANED, StepStatus.CANCELLED)
    assert not can_transition(StepStatus.ORPHANED, StepStatus.APPROVED)
    assert not can_transition(StepStatus.APPROVED, StepStatus.PENDING)
    assert not can_transition(StepStatus.EXPIRED, StepStatus.REASSIGNED)


def test_recipients_prefer_direct_assignee():
    direct = StepExecution(
        instance_id="i", company_id="c", step_index=0, step_name="s",
        assigned_user_id="u1", due_at=T0,
    )
    role = StepExecution(
        instance_id="i", company_id="c", step_index=0, step_name="s",
        assigned_role="finance", candidates=["u2", "u3"], due_at=T0,
    )
    assert direct.recipients == ["u1"]
    assert role.recipients == ["u2", "u3"]


def test_approval_event_json():
    event = ApprovalEvent(
        kind=EventKind.APPROVAL_REQUEST, company_id="acme", payload={"step": "Review"}
    )
    restored = ApprovalEvent.from_json(event.to_json())
    assert restored == event
    assert restored.topic == event_topic("acme") == "approvals.acme"


def test_comment_text_is_trimmed_and_bounded():
    comment = ApprovalComment(
        step_execution_id="s1",
        instance_id="i1",
        company_id="acme",
        author_id="u1",
        text="  Please attach the quote  ",
    )
    assert comment.text == "Please attach the quote"
    assert not comment.internal

    with pytest.raises(ValidationError):
        ApprovalComment(
            step_execution_id="s1", instance_id="i1", company_id="acme", author_id="u1", text="   "
        )
    with pytest.raises(ValidationError):
        ApprovalComment(
            step_execution_id="s1",
            instance_id="i1",
            company_id="acme",
            author_id="u1",
            text="x" * 2001,
        )
