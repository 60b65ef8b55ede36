"""Notification dispatcher and sink tests."""

import json

import httpx
import pytest

import ratify.notifications as notifications
from conftest import COMPANY, PO, T0, make_definition
from ratify.contracts import EventKind, StepExecution, WorkflowInstance, event_topic
from ratify.notifications import (
    NotificationDispatcher,
    NotificationPayload,
    RecordingNotificationSink,
    TransportNotificationSink,
    WebhookNotificationSink,
)
from ratify.transports.inmemory import InMemoryTransport


def _payload(kind=EventKind.APPROVAL_REQUEST, **extra) -> NotificationPayload:
    definition = make_definition()
    instance = WorkflowInstance(
        definition_id=definition.id,
        definition_version=1,
        company_id=COMPANY,
        business_object=PO,
        triggered_by="requester",
    )
    execution = StepExecution(
        instance_id=instance.id,
        company_id=COMPANY,
        step_index=1,
        step_name="Finance review",
        assigned_role="finance",
        candidates=["u2"],
        due_at=T0,
    )
    return NotificationPayload.build(kind, definition, instance, execution, T0, **extra)


class FailingSink:
    def __init__(self, failures: int = 1_000) -> None:
        self.failures = failures
        self.calls = 0

    async def notify(self, kind, payload):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("smtp relay down")


def test_payload_carries_template_fields():
    payload = _payload(reason="user_deactivated")
    assert payload.workflow_name == "Purchase approval"
    assert payload.step_count == 3
    assert payload.step_index == 1
    assert payload.recipients == ["u2"]
    assert payload.business_object == PO
    assert payload.reason == "user_deactivated"


@pytest.mark.asyncio
async def test_failing_sink_is_swallowed_and_others_still_notified():
    failing = FailingSink()
    recording = RecordingNotificationSink()
    dispatcher = NotificationDispatcher([failing, recording], max_attempts=1)

    delivered = await dispatcher.dispatch(EventKind.APPROVAL_REQUEST, _payload())

    assert delivered is False
    assert failing.calls == 1
    assert recording.kinds() == [EventKind.APPROVAL_REQUEST]


@pytest.mark.asyncio
async def test_dispatcher_retries_until_success(monkeypatch):
    delays = []

    async def no_wait(attempt, base=1.5):
        delays.append(attempt)

    monkeypatch.setattr(notifications, "schedule_retry", no_wait)
    flaky = FailingSink(failures=2)
    dispatcher = NotificationDispatcher([flaky], max_attempts=3)

    assert await dispatcher.dispatch(EventKind.APPROVAL_REMINDER, _payload()) is True
    assert flaky.calls == 3
    assert delays == [1, 2]


@pytest.mark.asyncio
async def test_webhook_sink_posts_json():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookNotificationSink("https://mail.example.com/hooks/approvals", client=client)
        await sink.notify(EventKind.APPROVAL_REQUEST, _payload())

    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert body["type"] == "approval_request"
    assert body["payload"]["step_name"] == "Finance review"
    assert body["payload"]["recipients"] == ["u2"]


@pytest.mark.asyncio
async def test_webhook_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookNotificationSink("https://mail.example.com/hooks/approvals", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await sink.notify(EventKind.APPROVAL_REQUEST, _payload())

        dispatcher = NotificationDispatcher([sink], max_attempts=1)
        assert await dispatcher.dispatch(EventKind.APPROVAL_REQUEST, _payload()) is False


@pytest.mark.asyncio
async def test_transport_sink_publishes_to_company_topic():
    transport = InMemoryTransport()
    queue = transport.open(event_topic(COMPANY))
    sink = TransportNotificationSink(transport)

    await sink.notify(EventKind.APPROVAL_EXPIRED, _payload(EventKind.APPROVAL_EXPIRED))

    event = queue.get_nowait()
    assert event.kind is EventKind.APPROVAL_EXPIRED
    assert event.company_id == COMPANY
    assert event.payload["workflow_name"] == "Purchase approval"
