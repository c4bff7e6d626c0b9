"""End-to-end reconciliation of stored SMS against pending payments."""

import httpx
import pytest
from sqlalchemy import select

from momorecon.common.circuit_breaker import CircuitBreaker
from momorecon.common.events import EventEnvelope
from momorecon.services.ingestion.models import RawSmsRecord
from momorecon.services.reconciler.classifier import ClassifierClient
from momorecon.services.reconciler.matcher import AutoSettle, ManualReview, Matcher, MatchPolicy, NoCandidate
from momorecon.services.reconciler.models import ParsedSms
from momorecon.services.reconciler.parser import SmsParser
from momorecon.services.reconciler.prompts import ParserPromptService
from momorecon.services.reconciler.service import ReconciliationPipeline
from momorecon.services.settlement.models import Payment, TicketOrder


MTN_TEXT = "You have received 15000 RWF from 0788xxxxxx Ref: TXA123"


def load(session_factory, sms_id):
    with session_factory() as db:
        record = db.get(RawSmsRecord, sms_id)
        parsed = db.execute(select(ParsedSms).where(ParsedSms.sms_id == sms_id)).scalar_one_or_none()
    return record, parsed


@pytest.mark.asyncio
async def test_happy_path_auto_settles_ticket(session_factory, pipeline, make_payment, make_sms, realtime):
    payment = make_payment(15000)
    sms = make_sms(MTN_TEXT)

    decision = await pipeline.process_sms(sms.id)

    assert decision == AutoSettle(payment.id)
    record, parsed = load(session_factory, sms.id)
    assert record.ingest_status == "parsed"
    assert parsed.confidence == pytest.approx(0.92)
    assert parsed.match_decision == "auto_settle"
    assert parsed.matched_entity == f"payment:{payment.id}"
    with session_factory() as db:
        assert db.get(Payment, payment.id).status == "confirmed"
        assert db.get(TicketOrder, payment.ticket_order_id).status == "paid"
    assert ("payment.confirmed", payment.id, sms.id) in realtime.events


@pytest.mark.asyncio
async def test_second_run_does_not_reprocess(session_factory, pipeline, make_payment, make_sms):
    make_payment(15000)
    sms = make_sms(MTN_TEXT)

    await pipeline.process_sms(sms.id)
    assert await pipeline.process_sms(sms.id) is None


@pytest.mark.asyncio
async def test_multiple_candidates_go_to_worklist(session_factory, pipeline, make_payment, make_sms, realtime):
    first = make_payment(5000)
    second = make_payment(5000)
    sms = make_sms("You have received 5000 RWF from 0788xxxxxx Ref: ZZ9911")

    decision = await pipeline.process_sms(sms.id)

    assert isinstance(decision, ManualReview)
    assert set(decision.candidate_ids) == {first.id, second.id}
    record, parsed = load(session_factory, sms.id)
    assert record.ingest_status == "manual_review"
    assert record.review_lane == "worklist"
    assert parsed.matched_entity is None
    assert set(parsed.candidate_payment_ids) == {first.id, second.id}
    with session_factory() as db:
        assert {db.get(Payment, pid).status for pid in (first.id, second.id)} == {"pending"}
    assert ("sms.manual_review", sms.id, "worklist") in realtime.events


@pytest.mark.asyncio
async def test_single_low_confidence_candidate_is_held(session_factory, pipeline, make_payment, make_sms):
    payment = make_payment(5000)
    sms = make_sms("Payment of 5,000 RWF received")

    decision = await pipeline.process_sms(sms.id)

    assert decision == ManualReview((payment.id,), reason="low_confidence")
    with session_factory() as db:
        held = db.get(Payment, payment.id)
    assert held.status == "manual_review"
    assert held.meta["review_reason"] == "low_confidence"


@pytest.mark.asyncio
async def test_implausible_sms_without_candidates_goes_to_triage(session_factory, state_machine, make_sms):
    pipeline = ReconciliationPipeline(
        session_factory,
        parser=SmsParser(),
        matcher=Matcher(MatchPolicy(plausible_floor=0.5)),
        state_machine=state_machine,
    )
    sms = make_sms("Payment of 7,000 RWF received")

    decision = await pipeline.process_sms(sms.id)

    assert decision == NoCandidate()
    record, parsed = load(session_factory, sms.id)
    assert record.ingest_status == "manual_review"
    assert record.review_lane == "triage"
    assert parsed.match_decision == "no_candidate"


@pytest.mark.asyncio
async def test_unparseable_sms_is_marked_error(session_factory, pipeline, make_sms):
    sms = make_sms("Your bundle expires tomorrow")

    assert await pipeline.process_sms(sms.id) is None

    record, parsed = load(session_factory, sms.id)
    assert record.ingest_status == "error"
    assert parsed.amount is None
    assert parsed.confidence == 0.0


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped(session_factory, pipeline, make_payment, make_sms, monkeypatch):
    make_payment(15000)
    sms = make_sms(MTN_TEXT)
    event = EventEnvelope(event_type="sms.received", aggregate_id=sms.id, trace_id="t-1", payload={"sms_id": sms.id})
    processed = []
    original = pipeline.process_sms

    async def counting(sms_id):
        processed.append(sms_id)
        return await original(sms_id)

    monkeypatch.setattr(pipeline, "process_sms", counting)

    await pipeline.handle_sms_received(event)
    await pipeline.handle_sms_received(event)

    assert processed == [sms.id]


@pytest.mark.asyncio
async def test_backlog_sweep_picks_up_stale_records(session_factory, pipeline, make_payment, make_sms):
    payment = make_payment(15000)
    sms = make_sms(MTN_TEXT)

    swept = await pipeline.process_backlog(older_than_seconds=-60)

    assert swept == 1
    with session_factory() as db:
        assert db.get(Payment, payment.id).status == "confirmed"
        assert db.get(RawSmsRecord, sms.id).ingest_status == "parsed"


@pytest.mark.asyncio
async def test_active_prompt_reaches_classifier(session_factory, state_machine, operator, make_payment, make_sms, clock):
    prompts_seen = []

    def handler(request):
        prompts_seen.append(request.read().decode())
        return httpx.Response(200, json={"amount": 15000, "confidence": 0.95})

    ParserPromptService(session_factory).create_prompt("carrier v7", "find the transfer amount", operator, activate=True)
    parser = SmsParser(
        classifier=ClassifierClient("http://classifier.test", transport=httpx.MockTransport(handler)),
        breaker=CircuitBreaker("sms-classifier", timeout_ms=1000, failure_threshold=3, reset_ms=1000, clock=clock),
    )
    pipeline = ReconciliationPipeline(
        session_factory, parser=parser, matcher=Matcher(), state_machine=state_machine
    )
    make_payment(15000)
    sms = make_sms(MTN_TEXT)

    await pipeline.process_sms(sms.id)

    _, parsed = load(session_factory, sms.id)
    assert "find the transfer amount" in prompts_seen[0]
    assert parsed.parser_version == "rules-3+classifier-p1"
    assert parsed.confidence == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_receipt_in_another_currency_is_not_settled(session_factory, pipeline, make_payment, make_sms):
    payment = make_payment(15000)
    sms = make_sms("You have received 15000 KES from 0788xxxxxx Ref: TXA123")

    decision = await pipeline.process_sms(sms.id)

    assert decision == ManualReview((), reason="no_candidate_plausible")
    record, parsed = load(session_factory, sms.id)
    assert parsed.currency == "KES"
    assert parsed.matched_entity is None
    assert record.ingest_status == "manual_review"
    with session_factory() as db:
        assert db.get(Payment, payment.id).status == "pending"


@pytest.mark.asyncio
async def test_overflowing_classifier_amount_does_not_stall_backlog(
    session_factory, state_machine, make_payment, make_sms, clock
):
    def handler(request):
        if "15000" in request.read().decode():
            return httpx.Response(
                200, content=b'{"amount": 1e400, "confidence": 0.9}', headers={"content-type": "application/json"}
            )
        return httpx.Response(200, json={"amount": 5000, "confidence": 0.95})

    parser = SmsParser(
        classifier=ClassifierClient("http://classifier.test", transport=httpx.MockTransport(handler)),
        breaker=CircuitBreaker("sms-classifier", timeout_ms=1000, failure_threshold=3, reset_ms=1000, clock=clock),
    )
    pipeline = ReconciliationPipeline(session_factory, parser=parser, matcher=Matcher(), state_machine=state_machine)
    payment = make_payment(5000)
    overflowing = make_sms(MTN_TEXT)
    good = make_sms("You have received 5000 RWF from 0788xxxxxx Ref: ZZ9911")

    assert await pipeline.process_backlog(older_than_seconds=-60) == 2

    record, parsed = load(session_factory, overflowing.id)
    assert record.ingest_status == "manual_review"
    assert parsed.degraded is True
    assert parsed.amount == 15000
    with session_factory() as db:
        assert db.get(RawSmsRecord, good.id).ingest_status == "parsed"
        assert db.get(Payment, payment.id).status == "confirmed"


class CrashingParser(SmsParser):
    async def parse(self, record, prompt=None):
        if "crash" in record.text:
            raise RuntimeError("template table corrupted")
        return await super().parse(record, prompt)


@pytest.mark.asyncio
async def test_parser_crash_marks_record_error_and_sweep_continues(session_factory, state_machine, make_payment, make_sms):
    pipeline = ReconciliationPipeline(
        session_factory, parser=CrashingParser(), matcher=Matcher(), state_machine=state_machine
    )
    payment = make_payment(15000)
    broken = make_sms("crash 15000 RWF")
    good = make_sms(MTN_TEXT)

    assert await pipeline.process_backlog(older_than_seconds=-60) == 2

    record, parsed = load(session_factory, broken.id)
    assert record.ingest_status == "error"
    assert parsed.amount is None
    with session_factory() as db:
        assert db.get(RawSmsRecord, good.id).ingest_status == "parsed"
        assert db.get(Payment, payment.id).status == "confirmed"


@pytest.mark.asyncio
async def test_backlog_keeps_going_after_a_failing_record(session_factory, pipeline, make_payment, make_sms, monkeypatch):
    payment = make_payment(15000)
    first = make_sms("You have received 7000 RWF from 0788xxxxxx Ref: QQ1")
    second = make_sms(MTN_TEXT)
    original = pipeline.process_sms

    async def flaky(sms_id):
        if sms_id == first.id:
            raise RuntimeError("database went away")
        return await original(sms_id)

    monkeypatch.setattr(pipeline, "process_sms", flaky)

    assert await pipeline.process_backlog(older_than_seconds=-60) == 2
    with session_factory() as db:
        assert db.get(RawSmsRecord, first.id).ingest_status == "received"
        assert db.get(RawSmsRecord, second.id).ingest_status == "parsed"
        assert db.get(Payment, payment.id).status == "confirmed"
