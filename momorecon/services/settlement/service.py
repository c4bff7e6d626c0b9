"""Settlement state machine.

Owns every payment status change. A settlement is one transaction made of:

1. claim the parsed SMS (`matched_entity`, written once, UNIQUE);
2. move the payment to `confirmed` guarded by `(id, status, state_version)`;
3. settle the dependent order / membership / donation;

plus an audit entry and a `payments.confirmed` outbox event. Any failure rolls
the whole unit back. `apply_*` variants run inside a caller-owned session so
the review queue can compose them with its own writes.
"""

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from momorecon.common.clock import utcnow
from momorecon.common.config import settings
from momorecon.common.errors import InvalidTransition, MatchConflict, NotFound
from momorecon.common.events import PAYMENTS_CONFIRMED, PAYMENTS_FAILED, PAYMENTS_REVERSED
from momorecon.common.logging import log_context, logger, trace_id_ctx
from momorecon.common.metrics import settlements_total
from momorecon.common.outbox import enqueue_event
from momorecon.common.state_machine import (
    PAYMENT_CONFIRMED,
    PAYMENT_FAILED,
    PAYMENT_MANUAL_REVIEW,
    validate_transition,
)
from momorecon.common.tracing import pipeline_span
from momorecon.services.audit.service import SYSTEM_ACTOR, AuditLog, snapshot
from momorecon.services.reconciler.models import ParsedSms
from momorecon.services.settlement.dependents import DependentEntity, default_dependents
from momorecon.services.settlement.models import Payment


def matched_entity_for(payment_id: str) -> str:
    return f"payment:{payment_id}"


class SettlementStateMachine:
    """Only writer of payments and their dependent entities."""

    def __init__(
        self,
        session_factory,
        dependents: dict[str, DependentEntity] | None = None,
        audit: AuditLog | None = None,
        realtime=None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.dependents = dependents if dependents is not None else default_dependents()
        self.audit = audit or AuditLog()
        self.realtime = realtime
        self.service_name = service_name or settings.service_name

    def _trace_id(self) -> str:
        return trace_id_ctx.get() or str(uuid4())

    def _dependent(self, payment: Payment) -> DependentEntity:
        dependent = self.dependents.get(payment.kind)
        if dependent is None:
            raise NotFound(f"no dependent entity registered for kind {payment.kind}")
        return dependent

    def _load_payment(self, db, payment_id: str) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"payment {payment_id} not found")
        return payment

    def _load_parsed(self, db, sms_id: str) -> ParsedSms:
        parsed = db.execute(select(ParsedSms).where(ParsedSms.sms_id == sms_id)).scalar_one_or_none()
        if parsed is None:
            raise NotFound(f"parsed sms for {sms_id} not found")
        return parsed

    def _transition(self, db, payment: Payment, new_status: str, values: dict | None = None) -> None:
        """Apply one validated transition with optimistic concurrency.

        Writes are guarded by `(id, status, state_version)`; zero affected rows
        means another writer got there first.
        """

        validate_transition(payment.status, new_status)
        from_status = payment.status
        current_version = payment.state_version
        changes = {
            Payment.status: new_status,
            Payment.state_version: current_version + 1,
            Payment.updated_at: utcnow(),
        }
        for key, value in (values or {}).items():
            changes[getattr(Payment, key)] = value
        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == from_status,
                Payment.state_version == current_version,
            )
            .values(changes)
        )
        if result.rowcount != 1:
            raise MatchConflict(
                f"payment {payment.id} changed concurrently (expected {from_status} v{current_version})"
            )
        logger.info(
            "payment_transition payment_id=%s from=%s to=%s version=%s",
            payment.id,
            from_status,
            new_status,
            current_version + 1,
        )

    def _event_payload(self, payment: Payment, **extra) -> dict:
        meta = payment.meta or {}
        return {
            "payment_id": payment.id,
            "kind": payment.kind,
            "amount": payment.amount,
            "currency": payment.currency,
            "notify_to": meta.get("supporter_msisdn"),
            **extra,
        }

    def apply_settle(
        self, db, payment_id: str, sms_id: str, actor_id: str = SYSTEM_ACTOR
    ) -> tuple[Payment, bool]:
        """Settle inside `db`; returns `(payment, changed)`.

        `changed` is False when the payment is already confirmed by this same SMS.
        """

        with pipeline_span("settle", sms_id, payment_id=payment_id, actor=actor_id) as span:
            with log_context(payment_id=payment_id):
                payment, changed = self._settle_in(db, payment_id, sms_id, actor_id)
            span.set_attribute("momorecon.changed", changed)
        return payment, changed

    def _settle_in(self, db, payment_id: str, sms_id: str, actor_id: str) -> tuple[Payment, bool]:
        payment = self._load_payment(db, payment_id)
        parsed = self._load_parsed(db, sms_id)
        entity = matched_entity_for(payment.id)

        if payment.status == PAYMENT_CONFIRMED:
            if payment.parsed_sms_id == parsed.id:
                return payment, False
            raise MatchConflict(f"payment {payment.id} already confirmed by another sms")
        if parsed.matched_entity is not None:
            raise MatchConflict(f"sms {sms_id} already matched to {parsed.matched_entity}")
        if parsed.amount is None:
            raise MatchConflict(f"sms {sms_id} has no amount and cannot settle a payment")
        validate_transition(payment.status, PAYMENT_CONFIRMED)

        before = snapshot(payment)
        try:
            claimed = db.execute(
                update(ParsedSms)
                .where(ParsedSms.id == parsed.id, ParsedSms.matched_entity.is_(None))
                .values(matched_entity=entity)
            )
        except IntegrityError as exc:
            raise MatchConflict(f"{entity} is already held by another sms") from exc
        if claimed.rowcount != 1:
            raise MatchConflict(f"sms {sms_id} was matched concurrently")

        meta = dict(payment.meta or {})
        meta["reference"] = parsed.reference
        meta["sms_id"] = sms_id
        try:
            self._transition(
                db,
                payment,
                PAYMENT_CONFIRMED,
                {"parsed_sms_id": parsed.id, "confirmed_at": utcnow(), "meta": meta},
            )
        except IntegrityError as exc:
            raise MatchConflict(f"payment {payment.id} is already linked to another sms") from exc
        self._dependent(payment).mark_settled(db, payment, parsed.reference)

        self.audit.record(db, "payment.confirm", "payment", payment.id, before, snapshot(payment), actor_id)
        enqueue_event(
            db,
            PAYMENTS_CONFIRMED,
            "payment",
            payment.id,
            self._trace_id(),
            self._event_payload(payment, sms_id=sms_id, reference=parsed.reference),
        )
        return payment, True

    def settle(self, payment_id: str, sms_id: str, actor_id: str = SYSTEM_ACTOR) -> Payment:
        """Confirm `payment_id` with `sms_id` in one transaction (idempotent)."""

        with self.session_factory() as db:
            try:
                payment, changed = self.apply_settle(db, payment_id, sms_id, actor_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
        self.after_settle(payment, sms_id, changed)
        return payment

    def after_settle(self, payment: Payment, sms_id: str, changed: bool) -> None:
        """Post-commit bookkeeping for a settlement."""

        outcome = "confirmed" if changed else "noop"
        settlements_total.labels(service=self.service_name, kind=payment.kind, outcome=outcome).inc()
        if changed:
            logger.info("payment_confirmed payment_id=%s kind=%s sms_id=%s", payment.id, payment.kind, sms_id)
            if self.realtime is not None:
                self.realtime.payment_confirmed(payment.id, payment.kind, sms_id)

    def apply_hold(self, db, payment_id: str, reason: str, actor_id: str = SYSTEM_ACTOR) -> Payment:
        """pending -> manual_review inside `db`."""

        payment = self._load_payment(db, payment_id)
        before = snapshot(payment)
        meta = dict(payment.meta or {})
        meta["review_reason"] = reason
        self._transition(db, payment, PAYMENT_MANUAL_REVIEW, {"meta": meta})
        self.audit.record(db, "payment.hold", "payment", payment.id, before, snapshot(payment), actor_id)
        return payment

    def hold_for_review(self, db, payment_id: str, reason: str) -> Payment:
        payment = self.apply_hold(db, payment_id, reason)
        settlements_total.labels(service=self.service_name, kind=payment.kind, outcome="held").inc()
        return payment

    def apply_fail(self, db, payment_id: str, reason: str, actor_id: str) -> Payment:
        payment = self._load_payment(db, payment_id)
        before = snapshot(payment)
        self._transition(db, payment, PAYMENT_FAILED, {"failure_reason": reason})
        self._dependent(payment).mark_failed(db, payment, reason)
        self.audit.record(db, "payment.fail", "payment", payment.id, before, snapshot(payment), actor_id)
        enqueue_event(db, PAYMENTS_FAILED, "payment", payment.id, self._trace_id(), self._event_payload(payment, reason=reason))
        return payment

    def fail(self, payment_id: str, reason: str, actor_id: str = SYSTEM_ACTOR) -> Payment:
        """manual_review -> failed with the dependent entity failed alongside."""

        with self.session_factory() as db:
            try:
                payment = self.apply_fail(db, payment_id, reason, actor_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
        settlements_total.labels(service=self.service_name, kind=payment.kind, outcome="failed").inc()
        logger.info("payment_failed payment_id=%s reason=%s actor=%s", payment.id, reason, actor_id)
        return payment

    def apply_reverse(self, db, payment_id: str, reason: str, actor_id: str) -> Payment:
        payment = self._load_payment(db, payment_id)
        if payment.status != PAYMENT_CONFIRMED:
            raise InvalidTransition(f"payment {payment.id} is {payment.status}; only confirmed payments can be reversed")
        before = snapshot(payment)
        parsed_sms_id = payment.parsed_sms_id
        meta = dict(payment.meta or {})
        meta["reversed_parsed_sms_id"] = parsed_sms_id
        self._transition(
            db,
            payment,
            PAYMENT_FAILED,
            {"failure_reason": reason, "parsed_sms_id": None, "meta": meta},
        )
        if parsed_sms_id is not None:
            db.execute(
                update(ParsedSms)
                .where(ParsedSms.id == parsed_sms_id, ParsedSms.matched_entity == matched_entity_for(payment.id))
                .values(matched_entity=None)
            )
        self._dependent(payment).mark_failed(db, payment, reason)
        self.audit.record(db, "payment.reverse", "payment", payment.id, before, snapshot(payment), actor_id)
        enqueue_event(
            db,
            PAYMENTS_REVERSED,
            "payment",
            payment.id,
            self._trace_id(),
            self._event_payload(payment, reason=reason, parsed_sms_id=parsed_sms_id),
        )
        return payment

    def reverse(self, payment_id: str, reason: str, actor_id: str = SYSTEM_ACTOR) -> Payment:
        """Administrative refund: confirmed -> failed, releasing the SMS."""

        with self.session_factory() as db:
            try:
                payment = self.apply_reverse(db, payment_id, reason, actor_id)
                db.commit()
            except Exception:
                db.rollback()
                raise
        settlements_total.labels(service=self.service_name, kind=payment.kind, outcome="reversed").inc()
        logger.info("payment_reversed payment_id=%s reason=%s actor=%s", payment.id, reason, actor_id)
        return payment
