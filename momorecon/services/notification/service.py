"""Supporter notifications for confirmed payments.

Consumes `payments.confirmed` and sends one message per payment through the
`supporter-notifier` circuit breaker. There is no retry: an open breaker or a
failed send is logged and recorded, and the event is considered handled.
"""

import asyncio

import httpx
from sqlalchemy.exc import IntegrityError

from momorecon.common.circuit_breaker import (
    NOTIFIER_BREAKER,
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerTimeoutError,
)
from momorecon.common.config import settings
from momorecon.common.events import PAYMENTS_CONFIRMED, EventEnvelope, consume_forever
from momorecon.common.logging import logger
from momorecon.common.metrics import notifications_total
from momorecon.common.outbox import inbox_seen, mark_inbox, record_duplicate_skip
from momorecon.services.notification.models import NotificationLog


KIND_LABELS = {
    "ticket": "ticket",
    "membership": "membership",
    "shop": "shop order",
    "donation": "donation",
}


class SupporterNotifier:
    """Outbound message sender (SMS/WhatsApp relay behind one HTTP endpoint)."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds or settings.notifier_timeout_ms / 1000.0 + 1.0
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> "SupporterNotifier | None":
        if not settings.notifier_url:
            return None
        return cls(settings.notifier_url, api_key=settings.notifier_api_key)

    async def send(self, to: str, message: str) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            resp = await client.post(self.url, json={"to": to, "message": message}, headers=headers)
        resp.raise_for_status()


def render_message(payload: dict) -> str:
    kind = KIND_LABELS.get(payload.get("kind"), "payment")
    amount = payload.get("amount")
    currency = payload.get("currency") or settings.default_currency
    return f"Payment of {amount} {currency} received. Your {kind} is confirmed."


class NotificationService:
    """Sends one supporter message per confirmed payment."""

    def __init__(
        self,
        session_factory,
        notifier: SupporterNotifier | None = None,
        breaker: CircuitBreaker | None = None,
        service_name: str | None = None,
    ) -> None:
        if notifier is not None and breaker is None:
            raise ValueError(f"notifier calls require the {NOTIFIER_BREAKER} breaker")
        self.session_factory = session_factory
        self.notifier = notifier
        self.breaker = breaker
        self.service_name = service_name or settings.service_name

    async def deliver(self, to: str | None, message: str) -> tuple[str, str | None]:
        """Return `(outcome, error)` for one send attempt."""

        if self.notifier is None or not to:
            return "skipped", "no notifier configured" if self.notifier is None else "no recipient"
        try:
            await self.breaker.execute(lambda: self.notifier.send(to, message))
        except CircuitBreakerOpenError as exc:
            return "skipped_open_circuit", str(exc)
        except (CircuitBreakerTimeoutError, httpx.HTTPError) as exc:
            return "failed", str(exc)
        return "sent", None

    async def handle_confirmed(self, event: EventEnvelope) -> None:
        """Notify the supporter once per event, skipping redeliveries."""

        with self.session_factory() as db:
            if inbox_seen(db, event.event_id, self.service_name):
                record_duplicate_skip(self.service_name, event)
                return
        message = render_message(event.payload)
        outcome, error = await self.deliver(event.payload.get("notify_to"), message)
        with self.session_factory() as db:
            db.add(
                NotificationLog(
                    payment_id=event.aggregate_id,
                    channel="sms",
                    message=message,
                    outcome=outcome,
                    error=error,
                )
            )
            mark_inbox(db, event.event_id, self.service_name)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
                return
        notifications_total.labels(service=self.service_name, outcome=outcome).inc()
        if outcome == "sent":
            logger.info("supporter_notified payment_id=%s", event.aggregate_id)
        else:
            logger.warning("supporter_notification_%s payment_id=%s error=%s", outcome, event.aggregate_id, error)

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(PAYMENTS_CONFIRMED, "notification-payments-confirmed", self.handle_confirmed),
        )
