"""Example walking a purchase order through a two-step approval chain."""

import asyncio
from datetime import timedelta

from ratify import (
    ApprovalRouter,
    BusinessObjectRef,
    Decision,
    InMemoryRoster,
    NotificationDispatcher,
    WorkflowDefinition,
    WorkflowEngine,
    get_repository,
    get_transport,
)
from ratify.clock import FixedClock
from ratify.contracts import event_topic
from ratify.notifications import LoggingNotificationSink, TransportNotificationSink


class PrintHook:
    async def on_instance_terminal(self, ref, final_status):
        print(f"📦 {ref} finished as {final_status.value}")


async def main():
    """Purchase order approval example."""
    # Roster and live event channel
    roster = InMemoryRoster(
        {"acme": {"manager": ["maria"], "finance": ["farid"], "admin": ["ada"]}}
    )
    transport = get_transport("inmemory")
    events = transport.open(event_topic("acme"))

    clock = FixedClock()
    engine = WorkflowEngine(
        get_repository(),
        ApprovalRouter(roster),
        dispatcher=NotificationDispatcher(
            [LoggingNotificationSink(), TransportNotificationSink(transport)]
        ),
        hook=PrintHook(),
        clock=clock,
    )

    # Define the approval chain
    definition = await engine.register_definition(
        WorkflowDefinition(
            name="Purchase approval",
            company_id="acme",
            trigger_type="purchase_order_created",
            trigger_conditions={"threshold": {"operator": "gt", "value": 5000}},
            steps=[
                {"name": "Manager review", "assignee_type": "role", "assignee": "manager"},
                {"name": "Finance review", "assignee_type": "role", "assignee": "finance", "timeout": "48h"},
            ],
        )
    )
    print(f"✅ Registered {definition.name} v{definition.version}")

    # A large order triggers the workflow
    po = BusinessObjectRef(type="purchase_order", id="PO-1042")
    [instance] = await engine.trigger(
        "acme", "purchase_order_created", po, "requester", {"amount": 12500}
    )
    print(f"📋 Instance {instance.id}: {instance.status.value}")

    # The manager approves, finance lets it sit for a day
    step = (await engine.get_instance_state(instance.id)).active_step
    await engine.submit_decision(step.id, "maria", Decision.APPROVE, notes="Budgeted")

    clock.advance(timedelta(hours=49))
    report = await engine.run_escalation_sweep()
    print(f"⏰ Sweep sent {report.reminders} reminder(s)")

    step = (await engine.get_instance_state(instance.id)).active_step
    await engine.submit_decision(step.id, "farid", Decision.APPROVE)

    while not events.empty():
        event = events.get_nowait()
        print(f"🔔 {event.kind.value}: {event.payload['step_name']}")


if __name__ == "__main__":
    asyncio.run(main())
