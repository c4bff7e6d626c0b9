"""Manual review queue: operator attach, dismiss, rematch and guards."""

import pytest
import pytest_asyncio
from sqlalchemy import select

from momorecon.common.errors import MatchConflict, NotFound, PermissionDenied
from momorecon.services.audit.service import AuditLog
from momorecon.services.ingestion.models import RawSmsRecord
from momorecon.services.reconciler.matcher import AutoSettle
from momorecon.services.review.models import ManualReviewResolution
from momorecon.services.settlement.models import Payment


AMBIGUOUS_TEXT = "You have received 5000 RWF from 0788xxxxxx Ref: ZZ9911"


@pytest_asyncio.fixture
async def ambiguous(pipeline, make_payment, make_sms):
    """One SMS in the worklist with two open candidates."""

    first = make_payment(5000)
    second = make_payment(5000)
    sms = make_sms(AMBIGUOUS_TEXT)
    await pipeline.process_sms(sms.id)
    return sms, first, second


@pytest.mark.asyncio
async def test_list_pending_shows_candidates(review, operator, ambiguous):
    sms, first, second = ambiguous

    items = review.list_pending(operator)

    assert [item.record.id for item in items] == [sms.id]
    assert {p.id for p in items[0].candidates} == {first.id, second.id}
    assert review.list_pending(operator, lane="triage") == []


@pytest.mark.asyncio
async def test_attach_settles_chosen_payment(session_factory, review, operator, ambiguous):
    sms, first, second = ambiguous

    payment = review.attach(sms.id, first.id, operator)

    assert payment.status == "confirmed"
    with session_factory() as db:
        assert db.get(Payment, second.id).status == "pending"
        assert db.get(RawSmsRecord, sms.id).ingest_status == "parsed"
        entries = AuditLog().list_entries(db, entity_type="sms", entity_id=sms.id)
    assert [e.action for e in entries] == ["sms.attach"]
    assert entries[0].actor_id == "operator-1"
    assert entries[0].before["payment"]["status"] == "pending"
    assert entries[0].after["payment"]["status"] == "confirmed"
    assert review.list_pending(operator) == []


@pytest.mark.asyncio
async def test_attach_after_resolution_conflicts(review, operator, ambiguous):
    sms, first, second = ambiguous
    review.attach(sms.id, first.id, operator)

    with pytest.raises(MatchConflict):
        review.attach(sms.id, second.id, operator)
    with pytest.raises(MatchConflict):
        review.dismiss(sms.id, "ignore", None, operator)


@pytest.mark.asyncio
async def test_attach_unknown_payment(review, operator, ambiguous):
    sms, _, _ = ambiguous

    with pytest.raises(NotFound):
        review.attach(sms.id, "missing", operator)


@pytest.mark.asyncio
async def test_dismiss_is_terminal(session_factory, review, operator, ambiguous):
    sms, first, _ = ambiguous

    entry = review.dismiss(sms.id, "duplicate", "same transfer twice", operator)

    assert entry.resolved_by == "operator-1"
    with session_factory() as db:
        assert db.get(RawSmsRecord, sms.id).ingest_status == "error"
        assert db.get(Payment, first.id).status == "pending"
        assert db.execute(select(ManualReviewResolution)).scalar_one().resolution == "duplicate"
    with pytest.raises(MatchConflict):
        review.dismiss(sms.id, "ignore", None, operator)


@pytest.mark.asyncio
async def test_dismiss_linked_elsewhere_marks_parsed(session_factory, review, operator, ambiguous):
    sms, _, _ = ambiguous

    review.dismiss(sms.id, "linked_elsewhere", "paid at the door", operator)

    with session_factory() as db:
        assert db.get(RawSmsRecord, sms.id).ingest_status == "parsed"


@pytest.mark.asyncio
async def test_actions_require_permission(review, viewer, ambiguous):
    sms, first, _ = ambiguous

    with pytest.raises(PermissionDenied):
        review.list_pending(viewer)
    with pytest.raises(PermissionDenied):
        review.attach(sms.id, first.id, viewer)
    with pytest.raises(PermissionDenied):
        review.reverse_payment(first.id, "refund", viewer)


@pytest.mark.asyncio
async def test_rematch_after_late_checkout(session_factory, review, pipeline, operator, make_payment, make_sms):
    """An SMS that arrived before its payment existed settles on rematch."""

    sms = make_sms("You have received 8000 RWF from 0788xxxxxx Ref: LATE01")
    await pipeline.process_sms(sms.id)
    payment = make_payment(8000)

    decision = review.rematch(sms.id, operator)

    assert decision == AutoSettle(payment.id)
    with session_factory() as db:
        assert db.get(Payment, payment.id).status == "confirmed"
        assert db.get(RawSmsRecord, sms.id).ingest_status == "parsed"
        actions = [e.action for e in AuditLog().list_entries(db, entity_id=sms.id)]
    assert actions == ["sms.rematch"]


@pytest.mark.asyncio
async def test_fail_held_payment(review, pipeline, operator, make_payment, make_sms):
    payment = make_payment(5000)
    sms = make_sms("Payment of 5,000 RWF received")
    await pipeline.process_sms(sms.id)

    failed = review.fail_payment(payment.id, "supporter never paid", operator)

    assert failed.status == "failed"


def test_clamp_limit(review):
    assert review.clamp_limit(None) == 50
    assert review.clamp_limit(0) == 1
    assert review.clamp_limit(10_000) == 200
