"""Approval router and roster tests."""

import pytest

from conftest import COMPANY, T0, make_definition
from ratify.contracts import BusinessObjectRef, StepExecution, WorkflowInstance
from ratify.exceptions import UnroutableStep
from ratify.roster import CachedRoster, InMemoryRoster
from ratify.router import ApprovalRouter


def _instance(definition) -> WorkflowInstance:
    return WorkflowInstance(
        definition_id=definition.id,
        definition_version=definition.version,
        company_id=COMPANY,
        business_object=BusinessObjectRef(type="invoice", id="INV-9"),
        triggered_by="requester",
    )


def _definition():
    return make_definition(
        [
            {"name": "Team", "assignee_type": "role", "assignee": "manager"},
            {"name": "Owner", "assignee_type": "user", "assignee": "u3"},
            {"name": "Creator", "assignee_type": "creator"},
            {"name": "Admin", "assignee_type": "admin"},
        ]
    )


@pytest.mark.asyncio
async def test_route_each_assignee_type(roster):
    roster.add(COMPANY, "manager", "u0")
    router = ApprovalRouter(roster)
    definition = _definition()
    instance = _instance(definition)

    team = await router.route_step(definition, instance, 0)
    assert team.assigned_role == "manager"
    assert team.candidates == ["u0", "u1"]

    owner = await router.route_step(definition, instance, 1)
    assert owner.assigned_user_id == "u3"

    creator = await router.route_step(definition, instance, 2)
    assert creator.assigned_user_id == "requester"

    admin = await router.route_step(definition, instance, 3)
    assert admin.assigned_role == "admin"
    assert admin.candidates == ["boss"]


@pytest.mark.asyncio
async def test_unroutable_steps(roster):
    router = ApprovalRouter(roster)
    definition = _definition()
    instance = _instance(definition)

    roster.remove(COMPANY, "manager", "u1")
    with pytest.raises(UnroutableStep):
        await router.route_step(definition, instance, 0)

    roster.deactivate(COMPANY, "u3")
    with pytest.raises(UnroutableStep):
        await router.route_step(definition, instance, 1)

    nominal = router.nominal_assignment(definition, instance, 1)
    assert nominal.assigned_user_id == "u3"


@pytest.mark.asyncio
async def test_is_authorised(roster):
    router = ApprovalRouter(roster)
    role_step = StepExecution(
        instance_id="i", company_id=COMPANY, step_index=0, step_name="Team",
        assigned_role="manager", candidates=["u1"], due_at=T0,
    )
    user_step = StepExecution(
        instance_id="i", company_id=COMPANY, step_index=0, step_name="Owner",
        assigned_user_id="u3", due_at=T0,
    )

    assert await router.is_authorised(role_step, "u1")
    assert await router.is_authorised(role_step, "boss")
    assert not await router.is_authorised(role_step, "u2")
    assert await router.is_authorised(user_step, "u3")
    assert not await router.is_authorised(user_step, "u1")

    assert await router.has_eligible_assignee(user_step)
    roster.deactivate(COMPANY, "u3")
    assert not await router.has_eligible_assignee(user_step)


@pytest.mark.asyncio
async def test_roster_deactivation_and_reactivation():
    roster = InMemoryRoster({COMPANY: {"finance": ["u2", "u1"]}})
    assert await roster.users_with_role(COMPANY, "finance") == ["u1", "u2"]

    roster.deactivate(COMPANY, "u1")
    assert await roster.users_with_role(COMPANY, "finance") == ["u2"]
    assert not await roster.is_active(COMPANY, "u1")

    roster.add(COMPANY, "finance", "u1")
    assert await roster.is_active(COMPANY, "u1")
    assert not await roster.is_active(COMPANY, "nobody")


@pytest.mark.asyncio
async def test_cached_roster_expires_entries():
    now = [0.0]
    inner = InMemoryRoster({COMPANY: {"finance": ["u2"]}})
    cached = CachedRoster(inner, ttl=10, timer=lambda: now[0])

    assert await cached.users_with_role(COMPANY, "finance") == ["u2"]
    inner.add(COMPANY, "finance", "u5")
    assert await cached.users_with_role(COMPANY, "finance") == ["u2"]

    now[0] = 11.0
    assert await cached.users_with_role(COMPANY, "finance") == ["u2", "u5"]

    inner.deactivate(COMPANY, "u5")
    assert await cached.is_active(COMPANY, "u2")
    cached.invalidate()
    assert await cached.users_with_role(COMPANY, "finance") == ["u2"]
