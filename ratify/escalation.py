"""Periodic escalation sweep over pending step executions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Optional

from pydantic import BaseModel

from .clock import ensure_utc
from .contracts import EscalationLevel, StepExecution, WorkflowDefinition

if TYPE_CHECKING:  # pragma: no cover
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    """Counts from one sweep."""

    scanned: int = 0
    reminders: int = 0
    urgent_reminders: int = 0
    expired: int = 0
    orphaned: int = 0
    stale: int = 0
    failed: int = 0

    @property
    def actions(self) -> int:
        return self.reminders + self.urgent_reminders + self.expired + self.orphaned


class EscalationScheduler:
    """Sends reminders, expires overdue steps and orphans unassignable ones.

    A sweep is idempotent: each row remembers the highest escalation level
    already notified, and only the highest level reached since is acted on.
    Rows that change under the sweep are skipped and counted as stale.
    """

    def __init__(self, engine: "WorkflowEngine") -> None:
        self.engine = engine

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = ensure_utc(now) if now is not None else self.engine.clock.now()
        report = SweepReport()
        definitions: Dict[str, WorkflowDefinition] = {}

        pending = await self.engine.repository.find_pending_step_executions()
        logger.debug(f"Escalation sweep at {now.isoformat()} over {len(pending)} pending steps")
        for execution in pending:
            report.scanned += 1
            try:
                await self._sweep_one(execution, now, definitions, report)
            except Exception:
                report.failed += 1
                logger.exception(f"Escalation failed for step_execution_id={execution.id}")

        if report.actions or report.stale or report.failed:
            logger.info(f"Escalation sweep finished: {report.model_dump()}")
        return report

    async def _sweep_one(
        self,
        execution: StepExecution,
        now: datetime,
        definitions: Dict[str, WorkflowDefinition],
        report: SweepReport,
    ) -> None:
        if not await self.engine.router.has_eligible_assignee(execution):
            if await self.engine.orphan_step(execution, "no_eligible_assignee", now) is None:
                report.stale += 1
            else:
                report.orphaned += 1
            return

        definition = definitions.get(execution.instance_id)
        if definition is None:
            instance = await self.engine.repository.get_instance(execution.instance_id)
            if instance is None:
                raise LookupError(f"instance {execution.instance_id} is missing")
            definition = await self.engine.repository.get_definition(
                instance.definition_id, instance.definition_version
            )
            if definition is None:
                raise LookupError(f"definition {instance.definition_id} is missing")
            definitions[execution.instance_id] = definition

        policy = definition.step(execution.step_index).escalation
        level = policy.level_at(execution.due_at, now)
        if level <= execution.escalation_level:
            return

        if level is EscalationLevel.EXPIRED:
            result = await self.engine.expire_step(execution, now)
            counter = "expired"
        else:
            result = await self.engine.escalate_step(execution, level, now)
            counter = "urgent_reminders" if level is EscalationLevel.URGENT else "reminders"

        if result is None:
            report.stale += 1
        else:
            setattr(report, counter, getattr(report, counter) + 1)
