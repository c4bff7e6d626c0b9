"""Supporter notifications on `payments.confirmed`."""

import httpx
import pytest
from sqlalchemy import select

from momorecon.common.circuit_breaker import CircuitBreaker
from momorecon.common.events import EventEnvelope
from momorecon.services.notification.models import NotificationLog
from momorecon.services.notification.service import NotificationService, SupporterNotifier, render_message


def confirmed_event(notify_to="0788123456") -> EventEnvelope:
    return EventEnvelope(
        event_type="payments.confirmed",
        aggregate_id="pay-1",
        trace_id="trace-1",
        payload={"payment_id": "pay-1", "kind": "ticket", "amount": 15000, "currency": "RWF", "notify_to": notify_to},
    )


def service_with(session_factory, clock, handler, failure_threshold=3) -> NotificationService:
    notifier = SupporterNotifier("http://notifier.test/send", transport=httpx.MockTransport(handler))
    breaker = CircuitBreaker(
        "supporter-notifier", timeout_ms=1000, failure_threshold=failure_threshold, reset_ms=60_000, clock=clock
    )
    return NotificationService(session_factory, notifier=notifier, breaker=breaker)


def logs(session_factory) -> list[NotificationLog]:
    with session_factory() as db:
        return list(db.execute(select(NotificationLog)).scalars())


def test_render_message():
    assert render_message({"kind": "shop", "amount": 2500, "currency": "RWF"}) == (
        "Payment of 2500 RWF received. Your shop order is confirmed."
    )


@pytest.mark.asyncio
async def test_sends_once_per_event(session_factory, clock):
    sent = []

    def handler(request):
        sent.append(request.read())
        return httpx.Response(202)

    service = service_with(session_factory, clock, handler)
    event = confirmed_event()

    await service.handle_confirmed(event)
    await service.handle_confirmed(event)

    assert len(sent) == 1
    [log] = logs(session_factory)
    assert log.outcome == "sent"
    assert log.payment_id == "pay-1"


@pytest.mark.asyncio
async def test_failure_is_recorded_not_retried(session_factory, clock):
    service = service_with(session_factory, clock, lambda request: httpx.Response(500))

    await service.handle_confirmed(confirmed_event())

    [log] = logs(session_factory)
    assert log.outcome == "failed"
    assert log.error


@pytest.mark.asyncio
async def test_open_breaker_skips_the_send(session_factory, clock):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    service = service_with(session_factory, clock, handler, failure_threshold=1)

    assert (await service.deliver("0788123456", "hi"))[0] == "failed"
    assert (await service.deliver("0788123456", "hi"))[0] == "skipped_open_circuit"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_without_recipient_or_notifier_nothing_is_sent(session_factory, clock):
    service = service_with(session_factory, clock, lambda request: httpx.Response(200))

    assert await service.deliver(None, "hi") == ("skipped", "no recipient")
    assert await NotificationService(session_factory).deliver("0788123456", "hi") == (
        "skipped",
        "no notifier configured",
    )
