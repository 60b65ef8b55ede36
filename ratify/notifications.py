"""Notification dispatch for approval workflow transitions.

The engine hands every transition to a :class:`NotificationDispatcher`,
which fans it out to the configured sinks (email webhook, live event
stream, logs). Delivery is best effort: failures are retried, then logged,
and never propagate back into the transition that caused them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import httpx
from pydantic import BaseModel, Field

from .contracts import (
    ApprovalEvent,
    BusinessObjectRef,
    Decision,
    EscalationLevel,
    EventKind,
    InstanceStatus,
    StepExecution,
    WorkflowDefinition,
    WorkflowInstance,
    event_topic,
)
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class NotificationPayload(BaseModel):
    """Everything an approval email template or live event needs."""

    kind: EventKind
    company_id: str
    instance_id: str
    instance_status: InstanceStatus
    step_execution_id: str
    workflow_name: str
    workflow_version: int
    step_name: str
    step_index: int
    step_count: int
    business_object: BusinessObjectRef
    triggered_by: str
    assigned_user_id: Optional[str] = None
    assigned_role: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    due_at: datetime
    escalation_level: EscalationLevel = EscalationLevel.NONE
    decision: Optional[Decision] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    reason: Optional[str] = None
    previous_assignee: Optional[str] = None
    occurred_at: datetime

    @classmethod
    def build(
        cls,
        kind: EventKind,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        execution: StepExecution,
        occurred_at: datetime,
        **extra: Any,
    ) -> "NotificationPayload":
        fields: dict[str, Any] = {
            "kind": kind,
            "company_id": instance.company_id,
            "instance_id": instance.id,
            "instance_status": instance.status,
            "step_execution_id": execution.id,
            "workflow_name": definition.name,
            "workflow_version": definition.version,
            "step_name": execution.step_name,
            "step_index": execution.step_index,
            "step_count": len(definition.steps),
            "business_object": instance.business_object,
            "triggered_by": instance.triggered_by,
            "assigned_user_id": execution.assigned_user_id,
            "assigned_role": execution.assigned_role,
            "recipients": execution.recipients,
            "due_at": execution.due_at,
            "escalation_level": execution.escalation_level,
            "decision": execution.decision,
            "actor_id": execution.completed_by,
            "notes": execution.notes,
            "occurred_at": occurred_at,
        }
        fields.update(extra)
        return cls(**fields)


class NotificationSink(Protocol):
    """Anything that can deliver a notification."""

    async def notify(self, kind: EventKind, payload: NotificationPayload) -> None:
        """Deliver one notification; raise on failure."""


class LoggingNotificationSink(NotificationSink):
    """Write notifications to the log."""

    async def notify(self, kind: EventKind, payload: NotificationPayload) -> None:
        logger.info(
            f"{kind.value} for step_execution_id={payload.step_execution_id} "
            f"instance_id={payload.instance_id} recipients={payload.recipients}"
        )


class RecordingNotificationSink(NotificationSink):
    """Keep notifications in memory for inspection."""

    def __init__(self) -> None:
        self.sent: List[Tuple[EventKind, NotificationPayload]] = []

    async def notify(self, kind: EventKind, payload: NotificationPayload) -> None:
        self.sent.append((kind, payload))

    def kinds(self) -> List[EventKind]:
        return [kind for kind, _ in self.sent]

    def clear(self) -> None:
        self.sent.clear()


class TransportNotificationSink(NotificationSink):
    """Push notifications to live subscribers of the company topic."""

    def __init__(self, transport: BaseTransport) -> None:
        self._transport = transport

    async def notify(self, kind: EventKind, payload: NotificationPayload) -> None:
        event = ApprovalEvent(
            kind=kind,
            company_id=payload.company_id,
            occurred_at=payload.occurred_at,
            payload=payload.model_dump(mode="json"),
        )
        await self._transport.publish(event_topic(payload.company_id), event)


class WebhookNotificationSink(NotificationSink):
    """POST notifications as JSON to an email delivery service."""

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._client = client
        self._timeout = timeout

    async def notify(self, kind: EventKind, payload: NotificationPayload) -> None:
        body = {"type": kind.value, "payload": payload.model_dump(mode="json")}
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, json=body)
        response.raise_for_status()


class NotificationDispatcher:
    """Fan notifications out to sinks with retry, never raising."""

    def __init__(
        self,
        sinks: Sequence[NotificationSink] = (),
        max_attempts: int = 3,
        backoff_base: float = 1.5,
    ) -> None:
        self.sinks: List[NotificationSink] = list(sinks)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    async def dispatch(self, kind: EventKind, payload: NotificationPayload) -> bool:
        """Deliver to every sink; return ``True`` if all of them succeeded."""
        delivered = True
        for sink in self.sinks:
            if not await self._deliver(sink, kind, payload):
                delivered = False
        return delivered

    async def _deliver(
        self, sink: NotificationSink, kind: EventKind, payload: NotificationPayload
    ) -> bool:
        sink_name = type(sink).__name__
        for attempt in range(1, self.max_attempts + 1):
            try:
                await sink.notify(kind, payload)
                return True
            except Exception as e:
                if attempt < self.max_attempts:
                    logger.warning(
                        f"{sink_name} failed to deliver {kind.value} for "
                        f"step_execution_id={payload.step_execution_id} "
                        f"(attempt {attempt}/{self.max_attempts}): {e}"
                    )
                    await schedule_retry(attempt, base=self.backoff_base)
                else:
                    logger.error(
                        f"{sink_name} gave up on {kind.value} for "
                        f"step_execution_id={payload.step_execution_id}: {e}"
                    )
        return False
