"""Approval workflow engine: step execution state machine.

The engine is the only writer of workflow instances and step executions.
Each transition is a compare-and-swap on the step execution (status plus
version) followed by a version-checked instance update and the
notifications; a caller that loses the race gets
:class:`~ratify.exceptions.StaleState`. A terminal instance is never
written again.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

from .clock import Clock, SystemClock, ensure_utc
from .config import RatifyConfig
from .contracts import (
    DECISION_OUTCOMES,
    ApprovalComment,
    AssigneeType,
    Assignment,
    BusinessObjectRef,
    Decision,
    EscalationLevel,
    EventKind,
    InstanceState,
    InstanceStatus,
    RequestChangesPolicy,
    StepExecution,
    StepStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .escalation import EscalationScheduler, SweepReport
from .exceptions import (
    DefinitionError,
    Forbidden,
    InvalidDecision,
    InvalidTransition,
    NotFound,
    StaleState,
    UnroutableStep,
)
from .notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationPayload,
    NotificationSink,
    TransportNotificationSink,
    WebhookNotificationSink,
)
from .persistence import WorkflowRepository
from .roster import CachedRoster, Roster
from .router import ApprovalRouter
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class BusinessObjectHook(Protocol):
    """Lets the owning business object react when its workflow ends."""

    async def on_instance_terminal(
        self, ref: BusinessObjectRef, final_status: InstanceStatus
    ) -> None:
        """Called exactly once per instance, after the terminal transition."""


class NullBusinessObjectHook(BusinessObjectHook):
    async def on_instance_terminal(
        self, ref: BusinessObjectRef, final_status: InstanceStatus
    ) -> None:
        return None


def parse_decision(value: Any) -> Decision:
    """Validate a decision coming from outside the engine."""
    if isinstance(value, Decision):
        return value
    try:
        return Decision(value)
    except (ValueError, TypeError):
        raise InvalidDecision(value) from None


class WorkflowEngine:
    """Runs approval workflows against a repository."""

    def __init__(
        self,
        repository: WorkflowRepository,
        router: ApprovalRouter,
        dispatcher: Optional[NotificationDispatcher] = None,
        hook: Optional[BusinessObjectHook] = None,
        clock: Optional[Clock] = None,
        system_actor: str = "system",
    ) -> None:
        self.repository = repository
        self.router = router
        self.dispatcher = dispatcher or NotificationDispatcher([LoggingNotificationSink()])
        self.hook = hook or NullBusinessObjectHook()
        self.clock = clock or SystemClock()
        self.system_actor = system_actor
        self.scheduler = EscalationScheduler(self)

    @classmethod
    def from_config(
        cls,
        config: RatifyConfig,
        repository: WorkflowRepository,
        roster: Roster,
        transport: Optional[BaseTransport] = None,
        hook: Optional[BusinessObjectHook] = None,
        clock: Optional[Clock] = None,
        extra_sinks: Sequence[NotificationSink] = (),
    ) -> "WorkflowEngine":
        """Wire an engine from configuration."""
        if config.roster_cache_ttl:
            roster = CachedRoster(roster, ttl=config.roster_cache_ttl)
        sinks: list[NotificationSink] = [LoggingNotificationSink()]
        if transport is not None:
            sinks.append(TransportNotificationSink(transport))
        if config.notifications.webhook_url:
            sinks.append(
                WebhookNotificationSink(
                    config.notifications.webhook_url,
                    timeout=config.notifications.webhook_timeout,
                )
            )
        sinks.extend(extra_sinks)
        dispatcher = NotificationDispatcher(
            sinks,
            max_attempts=config.notifications.max_attempts,
            backoff_base=config.notifications.backoff_base,
        )
        return cls(
            repository,
            ApprovalRouter(roster, admin_role=config.engine.admin_role),
            dispatcher=dispatcher,
            hook=hook,
            clock=clock,
            system_actor=config.engine.system_actor,
        )

    # ------------------------------------------------------------------
    # Definitions
    async def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a definition; re-registering a name creates a new version.

        Assignee problems found by :meth:`validate_definition` are logged as
        warnings; registration still goes ahead.
        """
        for problem in await self.validate_definition(definition):
            logger.warning(f"Workflow '{definition.name}': {problem}")
        stored = await self.repository.save_definition(definition)
        logger.info(
            f"Registered workflow '{stored.name}' v{stored.version} "
            f"definition_id={stored.id} company_id={stored.company_id}"
        )
        return stored

    async def validate_definition(self, definition: WorkflowDefinition) -> list[str]:
        """Check every step's assignee against the current roster.

        Returns one message per step nobody could act on today; an empty
        list means every step is routable.
        """
        problems: list[str] = []
        company_id = definition.company_id
        roster = self.router.roster
        for template in definition.steps:
            if template.assignee_type is AssigneeType.USER:
                if not await roster.is_active(company_id, template.assignee):
                    problems.append(
                        f"step '{template.name}': user {template.assignee} is not active"
                    )
            elif template.assignee_type in (AssigneeType.ROLE, AssigneeType.ADMIN):
                role = (
                    template.assignee
                    if template.assignee_type is AssigneeType.ROLE
                    else self.router.admin_role
                )
                if not await roster.users_with_role(company_id, role):
                    problems.append(
                        f"step '{template.name}': role '{role}' has no active members, "
                        f"approval requests will be orphaned"
                    )
        return problems

    async def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = await self.repository.get_definition(
            instance.definition_id, instance.definition_version
        )
        if definition is None:
            raise NotFound(
                "WorkflowDefinition",
                f"{instance.definition_id}@v{instance.definition_version}",
            )
        return definition

    async def _load_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise NotFound("WorkflowInstance", instance_id)
        return instance

    async def _load_context(
        self, execution: StepExecution
    ) -> Tuple[WorkflowInstance, WorkflowDefinition]:
        instance = await self._load_instance(execution.instance_id)
        return instance, await self._definition_for(instance)

    # ------------------------------------------------------------------
    # Starting workflows
    async def start_workflow(
        self,
        definition_id: str,
        business_object: BusinessObjectRef,
        triggered_by: str,
        data: Optional[Dict[str, Any]] = None,
        version: Optional[int] = None,
    ) -> WorkflowInstance:
        """Create an instance for ``business_object`` and route its first step."""
        definition = await self.repository.get_definition(definition_id, version)
        if definition is None:
            raise NotFound("WorkflowDefinition", definition_id)
        if not definition.is_active:
            raise DefinitionError(f"Workflow '{definition.name}' is not active")

        instance = WorkflowInstance(
            definition_id=definition.id,
            definition_version=definition.version,
            company_id=definition.company_id,
            business_object=business_object,
            triggered_by=triggered_by,
            data=data or {},
            created_at=self.clock.now(),
        )
        await self.repository.create_instance(instance)
        logger.info(
            f"Started workflow '{definition.name}' v{definition.version} "
            f"instance_id={instance.id} for {business_object}"
        )
        instance, _ = await self._activate_step(definition, instance, 0)
        return instance

    async def trigger(
        self,
        company_id: str,
        trigger_type: str,
        business_object: BusinessObjectRef,
        triggered_by: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> list[WorkflowInstance]:
        """Start every active definition whose trigger matches the business action."""
        data = data or {}
        instances: list[WorkflowInstance] = []
        for definition in await self.repository.list_definitions(company_id, active_only=True):
            if definition.trigger_type != trigger_type:
                continue
            conditions = definition.trigger_conditions
            if conditions is not None and not conditions.matches(data):
                logger.debug(f"Trigger conditions of '{definition.name}' not met for {business_object}")
                continue
            instances.append(
                await self.start_workflow(definition.id, business_object, triggered_by, data)
            )
        return instances

    async def _activate_step(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        step_index: int,
        assignment: Optional[Assignment] = None,
        reassigned_from: Optional[str] = None,
        event: EventKind = EventKind.APPROVAL_REQUEST,
        **event_extra: Any,
    ) -> Tuple[WorkflowInstance, StepExecution]:
        """Create the execution for ``step_index`` and make it the active step.

        An unroutable step is stored as orphaned and leaves the instance
        pending until someone reassigns or resubmits it. If the instance is
        terminal, or turns terminal before the new execution is committed,
        nothing stays active and :class:`InvalidTransition` is raised.
        """
        if instance.is_terminal:
            raise InvalidTransition(
                f"instance {instance.id}", instance.status.value, InstanceStatus.IN_PROGRESS.value
            )
        template = definition.step(step_index)
        now = self.clock.now()
        status = StepStatus.PENDING
        orphan_reason: Optional[str] = None
        if assignment is None:
            try:
                assignment = await self.router.route_step(definition, instance, step_index)
            except UnroutableStep as e:
                logger.warning(f"Orphaning step '{template.name}' of instance_id={instance.id}: {e.reason}")
                assignment = self.router.nominal_assignment(definition, instance, step_index)
                status = StepStatus.ORPHANED
                orphan_reason = e.reason

        execution = StepExecution(
            instance_id=instance.id,
            company_id=instance.company_id,
            step_index=step_index,
            step_name=template.name,
            assigned_role=assignment.assigned_role,
            assigned_user_id=assignment.assigned_user_id,
            candidates=assignment.candidates,
            status=status,
            notes=orphan_reason,
            created_at=now,
            due_at=now + template.timeout,
            completed_at=now if status is StepStatus.ORPHANED else None,
            reassigned_from=reassigned_from,
        )
        await self.repository.create_step_execution(execution)
        try:
            instance = await self._write_instance(
                instance,
                current_step_index=step_index,
                status=InstanceStatus.IN_PROGRESS
                if status is StepStatus.PENDING
                else InstanceStatus.PENDING,
            )
        except (InvalidTransition, StaleState):
            await self._retire_execution(execution, self.system_actor, now, "instance_changed")
            raise

        if status is StepStatus.ORPHANED:
            await self._notify(
                EventKind.APPROVAL_ORPHANED, definition, instance, execution, now, reason=orphan_reason
            )
            return instance, execution

        logger.info(
            f"Step '{template.name}' ({step_index + 1}/{len(definition.steps)}) assigned "
            f"step_execution_id={execution.id} instance_id={instance.id}"
        )
        if template.auto_approve:
            await self._decide(execution, Decision.APPROVE, self.system_actor, "Auto-approved")
            return await self._load_instance(instance.id), execution

        await self._notify(event, definition, instance, execution, now, **event_extra)
        return instance, execution

    # ------------------------------------------------------------------
    # Decisions
    async def submit_decision(
        self,
        step_execution_id: str,
        actor_id: str,
        decision: Decision | str,
        notes: Optional[str] = None,
    ) -> StepExecution:
        """Public entry point for approvers."""
        return await self.complete_step(step_execution_id, decision, actor_id, notes)

    async def complete_step(
        self,
        step_execution_id: str,
        decision: Decision | str,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> StepExecution:
        """Record ``decision`` on a pending step execution and advance the instance.

        Raises:
            NotFound: Unknown id or the execution is no longer pending.
            Forbidden: ``actor_id`` may not act on the execution.
            InvalidDecision: ``decision`` is not a :class:`Decision`.
            StaleState: A concurrent transition won.
        """
        execution = await self.repository.get_step_execution(step_execution_id)
        if execution is None:
            raise NotFound("StepExecution", step_execution_id)
        if not execution.is_pending:
            raise NotFound("StepExecution", step_execution_id, f"status is {execution.status.value}")
        if not await self.router.is_authorised(execution, actor_id):
            raise Forbidden(actor_id, step_execution_id)
        return await self._decide(execution, parse_decision(decision), actor_id, notes)

    async def _decide(
        self,
        execution: StepExecution,
        decision: Decision,
        actor_id: str,
        notes: Optional[str],
    ) -> StepExecution:
        now = self.clock.now()
        updated = await self.repository.conditional_update_step_execution(
            execution.id,
            execution.version,
            {
                "status": DECISION_OUTCOMES[decision],
                "decision": decision,
                "notes": notes,
                "completed_at": now,
                "completed_by": actor_id,
            },
        )
        if updated is None:
            logger.warning(
                f"Lost race deciding step_execution_id={execution.id} at version {execution.version}"
            )
            raise StaleState(execution.id, execution.version)

        instance, definition = await self._load_context(updated)
        logger.info(
            f"{actor_id} decided {decision.value} on step '{updated.step_name}' "
            f"step_execution_id={updated.id} instance_id={instance.id}"
        )

        try:
            await self._advance(definition, instance, updated, now)
        except InvalidTransition as e:
            # the decision stands; a cancel or expiry ended the instance first
            logger.warning(
                f"Recorded {decision.value} on step_execution_id={updated.id} but "
                f"instance_id={instance.id} is already {e.from_state}"
            )
        return updated

    async def _advance(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        decided: StepExecution,
        now: datetime,
    ) -> None:
        decision = decided.decision
        if decision is Decision.APPROVE:
            if definition.is_last_step(decided.step_index):
                instance = await self._finish(instance, InstanceStatus.APPROVED, now)
                await self._notify(EventKind.APPROVAL_COMPLETED, definition, instance, decided, now)
                await self._call_hook(instance)
            else:
                await self._notify(EventKind.APPROVAL_COMPLETED, definition, instance, decided, now)
                await self._activate_step(definition, instance, decided.step_index + 1)
        elif decision is Decision.REJECT:
            instance = await self._finish(instance, InstanceStatus.REJECTED, now)
            await self._notify(EventKind.APPROVAL_COMPLETED, definition, instance, decided, now)
            await self._call_hook(instance)
        else:
            await self._notify(EventKind.APPROVAL_COMPLETED, definition, instance, decided, now)
            if definition.request_changes_policy is RequestChangesPolicy.REOPEN_STEP:
                await self._activate_step(definition, instance, decided.step_index)
            else:
                await self._write_instance(instance, status=InstanceStatus.PENDING)

    async def resubmit(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        """Re-open the current step after changes were requested or it was orphaned.

        Only the requester or an admin may resubmit.
        """
        instance = await self._load_instance(instance_id)
        if instance.status is not InstanceStatus.PENDING:
            raise InvalidTransition(f"instance {instance_id}", instance.status.value, "in_progress")
        if actor_id != instance.triggered_by and not await self.router.is_admin(
            instance.company_id, actor_id
        ):
            raise Forbidden(actor_id, instance_id)

        executions = await self.repository.list_step_executions(instance_id)
        if not executions:
            raise InvalidTransition(f"instance {instance_id}", "pending", "in_progress")
        last = executions[-1]
        reassigned_from = None
        if last.status is StepStatus.ORPHANED:
            retired = await self.repository.conditional_update_step_execution(
                last.id,
                last.version,
                {"status": StepStatus.REASSIGNED, "completed_by": actor_id},
                expected_status=StepStatus.ORPHANED,
            )
            if retired is None:
                raise StaleState(last.id, last.version)
            reassigned_from = last.id
        elif last.status is not StepStatus.REQUESTED_CHANGES:
            raise InvalidTransition(f"step execution {last.id}", last.status.value, "pending")

        definition = await self._definition_for(instance)
        logger.info(f"{actor_id} resubmitted instance_id={instance_id} at step {last.step_index}")
        instance, _ = await self._activate_step(
            definition, instance, last.step_index, reassigned_from=reassigned_from
        )
        return instance

    # ------------------------------------------------------------------
    # Reassignment
    async def reassign_step(
        self,
        step_execution_id: str,
        actor_id: str,
        new_user_id: Optional[str] = None,
        new_role: Optional[str] = None,
        reason: str = "manual_reassign",
    ) -> StepExecution:
        """Move a pending or orphaned step to another user or role.

        Admins may reassign any step; the current assignee may hand over a
        pending one. Returns the new pending execution.
        """
        if (new_user_id is None) == (new_role is None):
            raise ValueError("Specify exactly one of new_user_id or new_role")

        execution = await self.repository.get_step_execution(step_execution_id)
        if execution is None:
            raise NotFound("StepExecution", step_execution_id)
        instance = await self._load_instance(execution.instance_id)
        if instance.is_terminal:
            raise InvalidTransition(
                f"instance {instance.id}", instance.status.value, InstanceStatus.IN_PROGRESS.value
            )
        if execution.status not in (StepStatus.PENDING, StepStatus.ORPHANED):
            raise NotFound("StepExecution", step_execution_id, "not pending or orphaned")

        is_admin = await self.router.is_admin(execution.company_id, actor_id)
        if not is_admin and not (
            execution.is_pending and await self.router.is_authorised(execution, actor_id)
        ):
            raise Forbidden(actor_id, step_execution_id)

        if new_user_id is not None:
            assignment = await self.router.assign_user(
                execution.company_id, new_user_id, execution.step_name
            )
        else:
            assignment = await self.router.assign_role(
                execution.company_id, new_role, execution.step_name
            )
        return await self._hand_over(execution, assignment, actor_id, reason)

    async def reassign_from_user(
        self,
        company_id: str,
        user_id: str,
        reason: str = "user_deactivated",
        fallback_role: Optional[str] = None,
    ) -> list[StepExecution]:
        """Hand every pending step of a departing user to a colleague.

        Each step goes to the first other active member of its role (or of
        ``fallback_role``) as a direct assignment, so the rest of the role
        can no longer act on it; with nobody left it is orphaned.
        """
        results: list[StepExecution] = []
        for execution in await self.repository.find_pending_step_executions():
            if execution.company_id != company_id or execution.assigned_user_id != user_id:
                continue
            role = execution.assigned_role or fallback_role
            colleagues: list[str] = []
            if role:
                colleagues = [
                    u for u in await self.router.roster.users_with_role(company_id, role) if u != user_id
                ]
            try:
                if colleagues:
                    assignment = Assignment(assigned_user_id=colleagues[0])
                    results.append(
                        await self._hand_over(execution, assignment, self.system_actor, reason)
                    )
                else:
                    orphaned = await self.orphan_step(execution, reason)
                    if orphaned is not None:
                        results.append(orphaned)
            except (StaleState, InvalidTransition) as e:
                logger.warning(f"Skipped reassigning step_execution_id={execution.id}: {e}")
        return results

    async def _hand_over(
        self,
        execution: StepExecution,
        assignment: Assignment,
        actor_id: str,
        reason: str,
    ) -> StepExecution:
        now = self.clock.now()
        retired = await self.repository.conditional_update_step_execution(
            execution.id,
            execution.version,
            {
                "status": StepStatus.REASSIGNED,
                "completed_at": now,
                "completed_by": actor_id,
                "notes": reason,
            },
            expected_status=execution.status,
        )
        if retired is None:
            raise StaleState(execution.id, execution.version)

        instance, definition = await self._load_context(retired)
        _, replacement = await self._activate_step(
            definition,
            instance,
            retired.step_index,
            assignment=assignment,
            reassigned_from=retired.id,
            event=EventKind.APPROVAL_REASSIGNED,
            reason=reason,
            actor_id=actor_id,
            previous_assignee=retired.assigned_user_id or retired.assigned_role,
        )
        logger.info(
            f"Reassigned step '{retired.step_name}' of instance_id={instance.id} "
            f"from {retired.assigned_user_id or retired.assigned_role} "
            f"to {assignment.assigned_user_id or assignment.assigned_role} ({reason})"
        )
        return replacement

    # ------------------------------------------------------------------
    # Transitions used by the escalation sweep
    async def escalate_step(
        self, execution: StepExecution, level: EscalationLevel, now: datetime
    ) -> StepExecution | None:
        """Record a reminder level and notify; ``None`` if the row moved on."""
        updated = await self.repository.conditional_update_step_execution(
            execution.id, execution.version, {"escalation_level": level}
        )
        if updated is None:
            return None
        instance, definition = await self._load_context(updated)
        kind = (
            EventKind.APPROVAL_URGENT_REMINDER
            if level is EscalationLevel.URGENT
            else EventKind.APPROVAL_REMINDER
        )
        await self._notify(kind, definition, instance, updated, now)
        return updated

    async def expire_step(self, execution: StepExecution, now: datetime) -> StepExecution | None:
        """Expire an overdue step and its instance; ``None`` if the row moved on."""
        updated = await self.repository.conditional_update_step_execution(
            execution.id,
            execution.version,
            {
                "status": StepStatus.EXPIRED,
                "escalation_level": EscalationLevel.EXPIRED,
                "completed_at": now,
            },
        )
        if updated is None:
            return None
        instance, definition = await self._load_context(updated)
        try:
            instance = await self._finish(instance, InstanceStatus.EXPIRED, now)
        except InvalidTransition as e:
            logger.warning(
                f"Expired step_execution_id={updated.id} but instance_id={instance.id} "
                f"is already {e.from_state}"
            )
            return updated
        logger.info(f"Expired step_execution_id={updated.id} instance_id={instance.id}")
        await self._notify(EventKind.APPROVAL_EXPIRED, definition, instance, updated, now)
        await self._call_hook(instance)
        return updated

    async def orphan_step(
        self, execution: StepExecution, reason: str, now: Optional[datetime] = None
    ) -> StepExecution | None:
        """Mark a pending step orphaned; the instance waits for reassignment."""
        now = now or self.clock.now()
        updated = await self.repository.conditional_update_step_execution(
            execution.id,
            execution.version,
            {"status": StepStatus.ORPHANED, "completed_at": now, "notes": reason},
        )
        if updated is None:
            return None
        instance, definition = await self._load_context(updated)
        try:
            instance = await self._write_instance(instance, status=InstanceStatus.PENDING)
        except InvalidTransition as e:
            logger.warning(
                f"Orphaned step_execution_id={updated.id} but instance_id={instance.id} "
                f"is already {e.from_state}"
            )
            return updated
        logger.warning(f"Orphaned step_execution_id={updated.id} instance_id={instance.id}: {reason}")
        await self._notify(
            EventKind.APPROVAL_ORPHANED, definition, instance, updated, now, reason=reason
        )
        return updated

    async def run_escalation_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return await self.scheduler.run_sweep(now)

    # ------------------------------------------------------------------
    # Cancellation and queries
    async def cancel_workflow(
        self, instance_id: str, actor_id: str, reason: Optional[str] = None
    ) -> WorkflowInstance:
        """Cancel a running or waiting instance. Requester or admin only.

        The instance is claimed first; afterwards every pending or orphaned
        execution is retired, so nothing can be decided, reassigned or
        resubmitted on it again.
        """
        instance = await self._load_instance(instance_id)
        if instance.is_terminal:
            raise InvalidTransition(
                f"instance {instance_id}", instance.status.value, InstanceStatus.CANCELLED.value
            )
        if actor_id != instance.triggered_by and not await self.router.is_admin(
            instance.company_id, actor_id
        ):
            raise Forbidden(actor_id, instance_id)

        now = self.clock.now()
        instance = await self._finish(instance, InstanceStatus.CANCELLED, now)
        for execution in await self.repository.list_step_executions(instance_id):
            await self._retire_execution(execution, actor_id, now, reason)
        logger.info(f"{actor_id} cancelled instance_id={instance_id}" + (f": {reason}" if reason else ""))
        await self._call_hook(instance)
        return instance

    async def get_instance_state(self, instance_id: str) -> InstanceState:
        instance = await self._load_instance(instance_id)
        definition = await self._definition_for(instance)
        return InstanceState(
            instance=instance,
            definition_name=definition.name,
            step_count=len(definition.steps),
            steps=await self.repository.list_step_executions(instance_id),
        )

    async def list_instances(self, company_id: Optional[str] = None) -> list[WorkflowInstance]:
        return await self.repository.list_instances(company_id)

    async def pending_approvals(self, company_id: str, user_id: str) -> list[StepExecution]:
        """Pending steps ``user_id`` may act on, oldest due first."""
        return [
            execution
            for execution in await self.repository.find_pending_step_executions()
            if execution.company_id == company_id
            and await self.router.is_authorised(execution, user_id)
        ]

    async def approval_digest(self, company_id: str) -> Dict[str, list[StepExecution]]:
        """Pending steps of a company grouped by the users who should act, oldest due first."""
        digest: Dict[str, list[StepExecution]] = {}
        for execution in await self.repository.find_pending_step_executions():
            if execution.company_id != company_id:
                continue
            for user_id in execution.recipients:
                digest.setdefault(user_id, []).append(execution)
        return digest

    async def add_comment(
        self,
        step_execution_id: str,
        actor_id: str,
        text: str,
        internal: bool = False,
    ) -> ApprovalComment:
        """Attach a comment to a step execution.

        The requester, anyone authorised on the step and admins may comment;
        only approvers may leave internal comments.

        Raises:
            NotFound: Unknown step execution.
            Forbidden: ``actor_id`` may not comment here.
        """
        execution = await self.repository.get_step_execution(step_execution_id)
        if execution is None:
            raise NotFound("StepExecution", step_execution_id)
        instance = await self._load_instance(execution.instance_id)
        is_approver = await self.router.is_authorised(execution, actor_id)
        if not is_approver and (internal or actor_id != instance.triggered_by):
            raise Forbidden(actor_id, step_execution_id)

        comment = ApprovalComment(
            step_execution_id=execution.id,
            instance_id=instance.id,
            company_id=instance.company_id,
            author_id=actor_id,
            text=text,
            internal=internal,
            created_at=self.clock.now(),
        )
        await self.repository.add_comment(comment)
        logger.info(
            f"{actor_id} commented on step_execution_id={execution.id}"
            + (" (internal)" if internal else "")
        )
        return comment

    async def list_comments(
        self, instance_id: str, include_internal: bool = True
    ) -> list[ApprovalComment]:
        await self._load_instance(instance_id)
        return [
            c
            for c in await self.repository.list_comments(instance_id)
            if include_internal or not c.internal
        ]

    # ------------------------------------------------------------------
    async def _write_instance(self, instance: WorkflowInstance, **update: Any) -> WorkflowInstance:
        """Store ``update`` over ``instance`` unless someone changed it since it was read.

        Raises:
            InvalidTransition: The instance is, or has meanwhile become, terminal.
            StaleState: Another writer changed the instance first.
        """
        target = InstanceStatus(update.get("status", instance.status))
        if instance.is_terminal:
            raise InvalidTransition(f"instance {instance.id}", instance.status.value, target.value)
        stored = await self.repository.update_instance(instance.model_copy(update=update))
        if stored is not None:
            return stored
        current = await self._load_instance(instance.id)
        if current.is_terminal:
            raise InvalidTransition(f"instance {instance.id}", current.status.value, target.value)
        logger.warning(
            f"Lost race updating instance_id={instance.id} at version {instance.version}"
        )
        raise StaleState(instance.id, instance.version, kind="WorkflowInstance")

    async def _finish(
        self, instance: WorkflowInstance, status: InstanceStatus, now: datetime
    ) -> WorkflowInstance:
        return await self._write_instance(instance, status=status, completed_at=ensure_utc(now))

    async def _retire_execution(
        self,
        execution: StepExecution | None,
        actor_id: str,
        now: datetime,
        notes: Optional[str],
    ) -> None:
        """Cancel ``execution`` if it is still pending or orphaned."""
        while execution is not None and execution.status in (
            StepStatus.PENDING,
            StepStatus.ORPHANED,
        ):
            cancelled = await self.repository.conditional_update_step_execution(
                execution.id,
                execution.version,
                {
                    "status": StepStatus.CANCELLED,
                    "completed_at": now,
                    "completed_by": actor_id,
                    "notes": notes,
                },
                expected_status=execution.status,
            )
            if cancelled is not None:
                return
            execution = await self.repository.get_step_execution(execution.id)

    async def _notify(
        self,
        kind: EventKind,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        execution: StepExecution,
        now: datetime,
        **extra: Any,
    ) -> None:
        payload = NotificationPayload.build(kind, definition, instance, execution, now, **extra)
        await self.dispatcher.dispatch(kind, payload)

    async def _call_hook(self, instance: WorkflowInstance) -> None:
        try:
            await self.hook.on_instance_terminal(instance.business_object, instance.status)
        except Exception:
            # the transition is already committed; the business object must catch up on its own
            logger.exception(
                f"Business hook failed for instance_id={instance.id} status={instance.status.value}"
            )
