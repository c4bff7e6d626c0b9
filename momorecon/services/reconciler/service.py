"""Reconciliation pipeline worker.

Consumes `sms.received`, parses the stored SMS, runs the matcher and applies
the decision. Each SMS moves through short transactions:

1. store the ParsedSms and move the raw record to `parsed` / `error`;
2. match and apply the decision (settle, or route to manual review).

A settle that loses a race in step 2 is rolled back and the SMS is routed to
manual review instead. Every step is guarded by the raw record's status, so a
redelivered event or a backlog sweep never processes an SMS twice.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from momorecon.common.clock import as_utc, utcnow
from momorecon.common.config import settings
from momorecon.common.errors import InvalidTransition, MatchConflict, NotFound
from momorecon.common.events import SMS_RECEIVED, EventEnvelope, KafkaBus, consume_forever
from momorecon.common.logging import log_context, logger
from momorecon.common.metrics import (
    match_decisions_total,
    sms_parse_confidence,
    sms_parse_total,
    sms_pipeline_seconds,
)
from momorecon.common.outbox import inbox_seen, mark_inbox, outbox_publisher, record_duplicate_skip
from momorecon.common.state_machine import (
    LANE_TRIAGE,
    LANE_WORKLIST,
    SMS_ERROR,
    SMS_MANUAL_REVIEW,
    SMS_PARSED,
    SMS_RECEIVED as SMS_STATUS_RECEIVED,
)
from momorecon.common.tracing import pipeline_span
from momorecon.services.audit.service import SYSTEM_ACTOR
from momorecon.services.ingestion.models import RawSmsRecord
from momorecon.services.ingestion.service import transition_sms
from momorecon.services.reconciler.matcher import AutoSettle, ManualReview, Matcher
from momorecon.services.reconciler.models import ParsedSms, ParserPrompt
from momorecon.services.reconciler.parser import UNPARSED, SmsParser
from momorecon.services.settlement.service import SettlementStateMachine


def active_prompt(db) -> ParserPrompt | None:
    return db.execute(
        select(ParserPrompt)
        .where(ParserPrompt.is_active.is_(True))
        .order_by(ParserPrompt.version.desc())
        .limit(1)
    ).scalar_one_or_none()


class ReconciliationPipeline:
    """Parser -> matcher -> state machine for one SMS at a time."""

    def __init__(
        self,
        session_factory,
        parser: SmsParser,
        matcher: Matcher,
        state_machine: SettlementStateMachine,
        realtime=None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.parser = parser
        self.matcher = matcher
        self.state_machine = state_machine
        self.realtime = realtime
        self.service_name = service_name or settings.service_name
        self.kafka = KafkaBus()

    def _store_parse(self, sms_id: str, result) -> ParsedSms | None:
        with self.session_factory() as db:
            record = db.get(RawSmsRecord, sms_id)
            if record is None or record.ingest_status != SMS_STATUS_RECEIVED:
                return None
            parsed = ParsedSms(
                sms_id=sms_id,
                amount=result.amount,
                currency=result.currency,
                reference=result.reference,
                payer_mask=result.payer_mask,
                confidence=result.confidence if result.parsed else 0.0,
                parser_version=result.parser_version,
                degraded=result.degraded,
                candidate_payment_ids=[],
            )
            db.add(parsed)
            try:
                db.flush()
                transition_sms(db, record, SMS_PARSED if result.parsed else SMS_ERROR)
                db.commit()
            except (IntegrityError, MatchConflict):
                db.rollback()
                logger.info("sms_already_parsed sms_id=%s", sms_id)
                return None
            return parsed

    def apply_decision(self, db, record: RawSmsRecord, parsed: ParsedSms, decision, actor_id: str = SYSTEM_ACTOR):
        """Write the side effects of `decision` inside `db`.

        Works for freshly parsed records and for records already waiting in
        manual review (operator rematch).
        """

        if isinstance(decision, AutoSettle):
            if record.ingest_status == SMS_MANUAL_REVIEW:
                transition_sms(db, record, SMS_PARSED)
            payment, _ = self.state_machine.apply_settle(db, decision.payment_id, record.id, actor_id)
            candidates = [decision.payment_id]
        else:
            payment = None
            lane = LANE_WORKLIST if isinstance(decision, ManualReview) else LANE_TRIAGE
            if record.ingest_status == SMS_MANUAL_REVIEW:
                db.execute(
                    update(RawSmsRecord)
                    .where(RawSmsRecord.id == record.id, RawSmsRecord.ingest_status == SMS_MANUAL_REVIEW)
                    .values(review_lane=lane, updated_at=utcnow())
                )
            else:
                transition_sms(db, record, SMS_MANUAL_REVIEW, lane)
            candidates = list(decision.candidate_ids) if isinstance(decision, ManualReview) else []
            if len(candidates) == 1:
                try:
                    self.state_machine.hold_for_review(db, candidates[0], decision.reason or "single_candidate")
                except (MatchConflict, InvalidTransition) as exc:
                    logger.warning("candidate_hold_skipped payment_id=%s error=%s", candidates[0], exc)
        db.execute(
            update(ParsedSms)
            .where(ParsedSms.id == parsed.id)
            .values(match_decision=decision.name, candidate_payment_ids=candidates)
        )
        return payment

    def _decide_and_apply(self, sms_id: str):
        with self.session_factory() as db:
            record = db.get(RawSmsRecord, sms_id)
            parsed = db.execute(select(ParsedSms).where(ParsedSms.sms_id == sms_id)).scalar_one()
            decision = self.matcher.reconcile(db, parsed, record.received_at)
            try:
                payment = self.apply_decision(db, record, parsed, decision)
                db.commit()
                return decision, record, parsed, payment
            except (MatchConflict, InvalidTransition, NotFound) as exc:
                db.rollback()
                if not isinstance(decision, AutoSettle):
                    raise
                logger.warning("auto_settle_conflict sms_id=%s payment_id=%s error=%s", sms_id, decision.payment_id, exc)

        fallback = ManualReview((), reason="settle_conflict")
        with self.session_factory() as db:
            record = db.get(RawSmsRecord, sms_id)
            parsed = db.execute(select(ParsedSms).where(ParsedSms.sms_id == sms_id)).scalar_one()
            self.apply_decision(db, record, parsed, fallback)
            db.commit()
        return fallback, record, parsed, None

    def after_decision(self, decision, record: RawSmsRecord, parsed: ParsedSms, payment=None) -> None:
        """Metrics and realtime notices once the decision is committed."""

        match_decisions_total.labels(service=self.service_name, decision=decision.name).inc()
        elapsed = max(0.0, (utcnow() - as_utc(record.received_at)).total_seconds())
        sms_pipeline_seconds.labels(service=self.service_name, decision=decision.name).observe(elapsed)
        logger.info(
            "match_decision sms_id=%s decision=%s confidence=%.2f candidates=%s",
            record.id,
            decision.name,
            parsed.confidence,
            len(getattr(decision, "candidate_ids", ())),
        )
        if isinstance(decision, AutoSettle):
            self.state_machine.after_settle(payment, record.id, changed=True)
        elif self.realtime is not None:
            lane = LANE_WORKLIST if isinstance(decision, ManualReview) else LANE_TRIAGE
            self.realtime.manual_review_required(record.id, parsed.amount, lane)

    async def process_sms(self, sms_id: str):
        """Parse, match and settle one stored SMS. Returns the decision or None."""

        with log_context(sms_id=sms_id):
            with self.session_factory() as db:
                record = db.get(RawSmsRecord, sms_id)
                if record is None:
                    logger.warning("sms_not_found sms_id=%s", sms_id)
                    return None
                if record.ingest_status != SMS_STATUS_RECEIVED:
                    logger.info("sms_already_processed sms_id=%s status=%s", sms_id, record.ingest_status)
                    return None
                prompt = active_prompt(db)

            with pipeline_span("parse", sms_id) as span:
                try:
                    result = await self.parser.parse(record, prompt)
                except Exception as exc:
                    # Stored as unparseable so the record leaves `received`.
                    logger.exception("sms_parse_crashed sms_id=%s error=%s", sms_id, exc)
                    result = UNPARSED
                span.set_attribute("momorecon.parser", result.parser)
                span.set_attribute("momorecon.confidence", result.confidence)
                span.set_attribute("momorecon.degraded", result.degraded)
                outcome = "parsed" if result.parsed else "error"
                sms_parse_total.labels(service=self.service_name, outcome=outcome, parser=result.parser).inc()
                sms_parse_confidence.labels(service=self.service_name).observe(result.confidence)
                parsed = self._store_parse(sms_id, result)
            if parsed is None:
                return None
            if not result.parsed:
                logger.warning("sms_unparseable sms_id=%s", sms_id)
                return None

            with pipeline_span("match", sms_id, amount=parsed.amount) as span:
                decision, record, parsed, payment = self._decide_and_apply(sms_id)
                span.set_attribute("momorecon.decision", decision.name)
            with log_context(payment_id=getattr(payment, "id", None)):
                self.after_decision(decision, record, parsed, payment)
            return decision

    def rematch(self, db, record: RawSmsRecord, actor_id: str):
        """Re-run matching for an SMS waiting in manual review, inside `db`."""

        parsed = db.execute(select(ParsedSms).where(ParsedSms.sms_id == record.id)).scalar_one_or_none()
        if parsed is None or parsed.amount is None:
            raise MatchConflict(f"sms {record.id} has no parsed amount to match")
        decision = self.matcher.reconcile(db, parsed, record.received_at)
        payment = self.apply_decision(db, record, parsed, decision, actor_id)
        return decision, parsed, payment

    async def handle_sms_received(self, event: EventEnvelope) -> None:
        with self.session_factory() as db:
            if inbox_seen(db, event.event_id, self.service_name):
                record_duplicate_skip(self.service_name, event)
                return
        await self.process_sms(event.payload["sms_id"])
        with self.session_factory() as db:
            mark_inbox(db, event.event_id, self.service_name)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()

    async def process_backlog(self, older_than_seconds: int = 60, limit: int = 50) -> int:
        """Pick up records still `received` whose event never reached the worker."""

        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        with self.session_factory() as db:
            sms_ids = list(
                db.execute(
                    select(RawSmsRecord.id)
                    .where(RawSmsRecord.ingest_status == SMS_STATUS_RECEIVED, RawSmsRecord.created_at < cutoff)
                    .order_by(RawSmsRecord.created_at)
                    .limit(limit)
                ).scalars()
            )
        for sms_id in sms_ids:
            try:
                await self.process_sms(sms_id)
            except Exception as exc:
                logger.exception("backlog_sms_failed sms_id=%s error=%s", sms_id, exc)
        return len(sms_ids)

    async def backlog_sweeper(self, interval_seconds: float = 30.0) -> None:
        while True:
            try:
                swept = await self.process_backlog()
                if swept:
                    logger.info("backlog_swept count=%s", swept)
            except Exception as exc:
                logger.exception("backlog_sweep_failed error=%s", exc)
            await asyncio.sleep(interval_seconds)

    async def outbox_publisher(self) -> None:
        await outbox_publisher(self.session_factory, self.kafka, self.service_name)

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(SMS_RECEIVED, "reconciler-sms-received", self.handle_sms_received),
        )
