"""Approval routing: who must act on a step."""

from __future__ import annotations

import logging

from .contracts import (
    AssigneeType,
    Assignment,
    StepExecution,
    WorkflowDefinition,
    WorkflowInstance,
)
from .exceptions import UnroutableStep
from .roster import Roster

logger = logging.getLogger(__name__)


class ApprovalRouter:
    """Resolves step templates to concrete assignments.

    Resolution is deterministic for a given roster: role members are
    returned sorted, and for role assignments the first member to act wins.
    """

    def __init__(self, roster: Roster, admin_role: str = "admin") -> None:
        self.roster = roster
        self.admin_role = admin_role

    async def route_step(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        step_index: int,
    ) -> Assignment:
        """Return the assignment for ``step_index`` of ``instance``.

        Raises:
            UnroutableStep: The rule resolves to nobody who can act.
        """
        template = definition.step(step_index)
        company_id = instance.company_id

        if template.assignee_type is AssigneeType.USER:
            return await self.assign_user(company_id, template.assignee, template.name)
        if template.assignee_type is AssigneeType.CREATOR:
            return await self.assign_user(company_id, instance.triggered_by, template.name)
        if template.assignee_type is AssigneeType.ROLE:
            return await self.assign_role(company_id, template.assignee, template.name)
        return await self.assign_role(company_id, self.admin_role, template.name)

    async def assign_user(
        self, company_id: str, user_id: str, step_name: str
    ) -> Assignment:
        if not await self.roster.is_active(company_id, user_id):
            raise UnroutableStep(step_name, f"user {user_id} is not active")
        return Assignment(assigned_user_id=user_id)

    async def assign_role(self, company_id: str, role: str, step_name: str) -> Assignment:
        members = sorted(await self.roster.users_with_role(company_id, role))
        if not members:
            raise UnroutableStep(step_name, f"role '{role}' has no active members")
        return Assignment(assigned_role=role, candidates=members)

    def nominal_assignment(
        self, definition: WorkflowDefinition, instance: WorkflowInstance, step_index: int
    ) -> Assignment:
        """What the step rule names, without checking the roster."""
        template = definition.step(step_index)
        if template.assignee_type is AssigneeType.USER:
            return Assignment(assigned_user_id=template.assignee)
        if template.assignee_type is AssigneeType.CREATOR:
            return Assignment(assigned_user_id=instance.triggered_by)
        if template.assignee_type is AssigneeType.ROLE:
            return Assignment(assigned_role=template.assignee)
        return Assignment(assigned_role=self.admin_role)

    async def is_admin(self, company_id: str, actor_id: str) -> bool:
        return actor_id in await self.roster.users_with_role(company_id, self.admin_role)

    async def has_eligible_assignee(self, execution: StepExecution) -> bool:
        """Whether anyone can still act on ``execution`` right now."""
        if execution.assigned_user_id and await self.roster.is_active(
            execution.company_id, execution.assigned_user_id
        ):
            return True
        if execution.assigned_role:
            members = await self.roster.users_with_role(
                execution.company_id, execution.assigned_role
            )
            return bool(members)
        return False

    async def is_authorised(self, execution: StepExecution, actor_id: str) -> bool:
        """Assigned user, a holder of the assigned role, or an admin."""
        company_id = execution.company_id
        if execution.assigned_user_id == actor_id:
            return True
        if execution.assigned_role and actor_id in await self.roster.users_with_role(
            company_id, execution.assigned_role
        ):
            return True
        return await self.is_admin(company_id, actor_id)
