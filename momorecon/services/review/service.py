"""Manual review queue.

Operators see SMS the matcher could not settle on its own and resolve them by
attaching a payment, dismissing the SMS, or asking for a rematch. Concurrent
resolutions are settled by the database: the raw record moves out of
`manual_review` with a conditional UPDATE, the resolution row is keyed by
`sms_id`, and `ParsedSms.matched_entity` is UNIQUE. Whoever loses gets
`MatchConflict` and nothing is written.
"""

from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from momorecon.common.auth import PAYMENTS_REVERSE, SMS_ATTACH, AdminPrincipal
from momorecon.common.config import settings
from momorecon.common.errors import MatchConflict, NotFound, ReconciliationError
from momorecon.common.logging import logger
from momorecon.common.metrics import manual_review_actions_total
from momorecon.common.state_machine import (
    LANE_WORKLIST,
    PAYMENT_MANUAL_REVIEW,
    PAYMENT_PENDING,
    SMS_ERROR,
    SMS_MANUAL_REVIEW,
    SMS_PARSED,
)
from momorecon.services.audit.service import AuditLog, snapshot
from momorecon.services.ingestion.models import RawSmsRecord
from momorecon.services.ingestion.service import transition_sms
from momorecon.services.reconciler.matcher import AutoSettle
from momorecon.services.reconciler.models import ParsedSms
from momorecon.services.review.models import RESOLUTIONS, ManualReviewResolution
from momorecon.services.settlement.models import Payment
from momorecon.services.settlement.service import SettlementStateMachine


@dataclass
class ReviewItem:
    record: RawSmsRecord
    parsed: ParsedSms | None
    candidates: list[Payment] = field(default_factory=list)


class ManualReviewService:
    """Operator actions over SMS waiting in `manual_review`."""

    def __init__(
        self,
        session_factory,
        state_machine: SettlementStateMachine,
        pipeline=None,
        audit: AuditLog | None = None,
        default_limit: int | None = None,
        max_limit: int | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.pipeline = pipeline
        self.audit = audit or state_machine.audit
        self.default_limit = default_limit or settings.manual_review_default_limit
        self.max_limit = max_limit or settings.manual_review_max_limit
        self.service_name = service_name or settings.service_name

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.default_limit
        return max(1, min(int(limit), self.max_limit))

    def _count(self, action: str) -> None:
        manual_review_actions_total.labels(service=self.service_name, action=action).inc()

    def _load_open_record(self, db, sms_id: str) -> RawSmsRecord:
        record = db.get(RawSmsRecord, sms_id)
        if record is None:
            raise NotFound(f"sms {sms_id} not found")
        if record.ingest_status != SMS_MANUAL_REVIEW:
            raise MatchConflict(f"sms {sms_id} is {record.ingest_status}, not awaiting review")
        return record

    def list_pending(self, actor: AdminPrincipal, limit: int | None = None, lane: str = LANE_WORKLIST) -> list[ReviewItem]:
        """Unresolved SMS in `lane`, newest first, with still-open candidates."""

        actor.require(SMS_ATTACH)
        resolved = select(ManualReviewResolution.sms_id)
        with self.session_factory() as db:
            records = list(
                db.execute(
                    select(RawSmsRecord)
                    .where(
                        RawSmsRecord.ingest_status == SMS_MANUAL_REVIEW,
                        RawSmsRecord.review_lane == lane,
                        RawSmsRecord.id.not_in(resolved),
                    )
                    .order_by(RawSmsRecord.received_at.desc(), RawSmsRecord.id)
                    .limit(self.clamp_limit(limit))
                ).scalars()
            )
            if not records:
                return []
            parsed_rows = db.execute(
                select(ParsedSms).where(ParsedSms.sms_id.in_([r.id for r in records]))
            ).scalars()
            parsed_by_sms = {p.sms_id: p for p in parsed_rows}
            candidate_ids = {pid for p in parsed_by_sms.values() for pid in (p.candidate_payment_ids or [])}
            payments = {}
            if candidate_ids:
                payments = {
                    p.id: p
                    for p in db.execute(
                        select(Payment).where(
                            Payment.id.in_(candidate_ids),
                            Payment.status.in_((PAYMENT_PENDING, PAYMENT_MANUAL_REVIEW)),
                        )
                    ).scalars()
                }
            items = []
            for record in records:
                parsed = parsed_by_sms.get(record.id)
                ordered = [
                    payments[pid]
                    for pid in (parsed.candidate_payment_ids if parsed is not None else []) or []
                    if pid in payments
                ]
                items.append(ReviewItem(record=record, parsed=parsed, candidates=ordered))
            return items

    def attach(self, sms_id: str, payment_id: str, actor: AdminPrincipal) -> Payment:
        """Settle `payment_id` with `sms_id` on behalf of an operator."""

        actor.require(SMS_ATTACH)
        with self.session_factory() as db:
            try:
                record = self._load_open_record(db, sms_id)
                payment = db.get(Payment, payment_id)
                if payment is None:
                    raise NotFound(f"payment {payment_id} not found")
                before = {"payment": snapshot(payment), "sms_status": record.ingest_status}
                transition_sms(db, record, SMS_PARSED)
                payment, changed = self.state_machine.apply_settle(db, payment_id, sms_id, actor.user_id)
                if not changed:
                    raise MatchConflict(f"payment {payment_id} was already settled by sms {sms_id}")
                db.execute(
                    update(ParsedSms).where(ParsedSms.sms_id == sms_id).values(match_decision="operator_attach")
                )
                self.audit.record(
                    db,
                    "sms.attach",
                    "sms",
                    sms_id,
                    before,
                    {"payment": snapshot(payment), "sms_status": SMS_PARSED},
                    actor.user_id,
                )
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise MatchConflict(f"sms {sms_id} or payment {payment_id} was resolved concurrently") from exc
            except Exception:
                db.rollback()
                raise
        self.state_machine.after_settle(payment, sms_id, changed)
        self._count("attach")
        logger.info("sms_attached sms_id=%s payment_id=%s actor=%s", sms_id, payment_id, actor.user_id)
        return payment

    def dismiss(self, sms_id: str, resolution: str, note: str | None, actor: AdminPrincipal) -> ManualReviewResolution:
        """Close an SMS without touching any payment."""

        actor.require(SMS_ATTACH)
        if resolution not in RESOLUTIONS:
            raise ReconciliationError(f"resolution must be one of {', '.join(RESOLUTIONS)}")
        with self.session_factory() as db:
            try:
                record = self._load_open_record(db, sms_id)
                before = {"ingest_status": record.ingest_status, "review_lane": record.review_lane}
                entry = ManualReviewResolution(
                    sms_id=sms_id,
                    resolution=resolution,
                    note=note,
                    resolved_by=actor.user_id,
                )
                db.add(entry)
                db.flush()
                new_status = SMS_PARSED if resolution == "linked_elsewhere" else SMS_ERROR
                transition_sms(db, record, new_status)
                self.audit.record(
                    db,
                    "sms.dismiss",
                    "sms",
                    sms_id,
                    before,
                    {"ingest_status": new_status, "resolution": resolution, "note": note},
                    actor.user_id,
                )
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise MatchConflict(f"sms {sms_id} already has a resolution") from exc
            except Exception:
                db.rollback()
                raise
        self._count("dismiss")
        logger.info("sms_dismissed sms_id=%s resolution=%s actor=%s", sms_id, resolution, actor.user_id)
        return entry

    def rematch(self, sms_id: str, actor: AdminPrincipal):
        """Run the matcher again, e.g. after a late checkout created the payment."""

        actor.require(SMS_ATTACH)
        if self.pipeline is None:
            raise ReconciliationError("rematch is not available in this process")
        with self.session_factory() as db:
            try:
                record = self._load_open_record(db, sms_id)
                before = {"review_lane": record.review_lane}
                decision, parsed, payment = self.pipeline.rematch(db, record, actor.user_id)
                self.audit.record(
                    db,
                    "sms.rematch",
                    "sms",
                    sms_id,
                    before,
                    {"decision": decision.name, "candidate_payment_ids": list(getattr(decision, "candidate_ids", ()))},
                    actor.user_id,
                )
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise MatchConflict(f"sms {sms_id} was resolved concurrently") from exc
            except Exception:
                db.rollback()
                raise
        if isinstance(decision, AutoSettle):
            self.state_machine.after_settle(payment, sms_id, True)
        self._count("rematch")
        logger.info("sms_rematched sms_id=%s decision=%s actor=%s", sms_id, decision.name, actor.user_id)
        return decision

    def fail_payment(self, payment_id: str, reason: str, actor: AdminPrincipal) -> Payment:
        actor.require(SMS_ATTACH)
        payment = self.state_machine.fail(payment_id, reason, actor.user_id)
        self._count("fail_payment")
        return payment

    def reverse_payment(self, payment_id: str, reason: str, actor: AdminPrincipal) -> Payment:
        actor.require(PAYMENTS_REVERSE)
        payment = self.state_machine.reverse(payment_id, reason, actor.user_id)
        self._count("reverse_payment")
        return payment
