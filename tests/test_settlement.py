"""Settlement state machine: cascade, at-most-once, atomicity, reversal."""

import pytest
from sqlalchemy import select

from momorecon.common.errors import InvalidTransition, MatchConflict
from momorecon.common.outbox import OutboxEvent
from momorecon.services.audit.models import AuditLogEntry
from momorecon.services.audit.service import AuditLog
from momorecon.services.reconciler.models import ParsedSms
from momorecon.services.settlement.dependents import TicketOrders, default_dependents
from momorecon.services.settlement.models import Donation, Membership, Payment, ShopOrder, TicketOrder
from momorecon.services.settlement.service import SettlementStateMachine


def test_settle_confirms_payment_and_ticket(session_factory, state_machine, make_payment, make_parsed_sms, realtime):
    """A settlement moves payment, SMS claim and dependent together."""

    payment = make_payment(15000, meta={"supporter_msisdn": "0788123456"})
    parsed = make_parsed_sms(15000, reference="TXA123")

    state_machine.settle(payment.id, parsed.sms_id)

    with session_factory() as db:
        stored = db.get(Payment, payment.id)
        ticket = db.get(TicketOrder, payment.ticket_order_id)
        claimed = db.get(ParsedSms, parsed.id)
        event = db.execute(select(OutboxEvent).where(OutboxEvent.event_type == "payments.confirmed")).scalar_one()
        audit = db.execute(select(AuditLogEntry).where(AuditLogEntry.action == "payment.confirm")).scalar_one()

    assert stored.status == "confirmed"
    assert stored.state_version == 1
    assert stored.parsed_sms_id == parsed.id
    assert stored.confirmed_at is not None
    assert stored.meta["reference"] == "TXA123"
    assert ticket.status == "paid"
    assert ticket.sms_ref == "TXA123"
    assert claimed.matched_entity == f"payment:{payment.id}"
    assert event.payload["payload"]["notify_to"] == "0788123456"
    assert audit.before["status"] == "pending"
    assert audit.after["status"] == "confirmed"
    assert ("payment.confirmed", payment.id, parsed.sms_id) in realtime.events


@pytest.mark.parametrize(
    "kind,model,foreign_key,settled",
    [
        ("shop", ShopOrder, "shop_order_id", "confirmed"),
        ("membership", Membership, "membership_id", "active"),
        ("donation", Donation, "donation_id", "confirmed"),
    ],
)
def test_settle_cascades_to_every_kind(
    session_factory, state_machine, make_payment, make_parsed_sms, kind, model, foreign_key, settled
):
    payment = make_payment(2000, kind=kind)
    parsed = make_parsed_sms(2000)

    state_machine.settle(payment.id, parsed.sms_id)

    with session_factory() as db:
        dependent = db.get(model, getattr(payment, foreign_key))
    assert dependent.status == settled
    if kind == "membership":
        assert dependent.expires_at > dependent.started_at


def test_repeat_settle_with_same_sms_is_a_noop(session_factory, state_machine, make_payment, make_parsed_sms):
    payment = make_payment(15000)
    parsed = make_parsed_sms(15000)

    state_machine.settle(payment.id, parsed.sms_id)
    again = state_machine.settle(payment.id, parsed.sms_id)

    assert again.state_version == 1
    with session_factory() as db:
        confirms = db.execute(select(AuditLogEntry).where(AuditLogEntry.action == "payment.confirm")).scalars().all()
    assert len(confirms) == 1


def test_second_sms_cannot_settle_confirmed_payment(state_machine, make_payment, make_parsed_sms):
    payment = make_payment(15000)
    first = make_parsed_sms(15000)
    second = make_parsed_sms(15000)

    state_machine.settle(payment.id, first.sms_id)
    with pytest.raises(MatchConflict):
        state_machine.settle(payment.id, second.sms_id)


def test_one_sms_cannot_settle_two_payments(session_factory, state_machine, make_payment, make_parsed_sms):
    first = make_payment(15000)
    second = make_payment(15000)
    parsed = make_parsed_sms(15000)

    state_machine.settle(first.id, parsed.sms_id)
    with pytest.raises(MatchConflict):
        state_machine.settle(second.id, parsed.sms_id)

    with session_factory() as db:
        assert db.get(Payment, second.id).status == "pending"


def test_sms_without_amount_cannot_settle(state_machine, make_payment, make_parsed_sms):
    payment = make_payment(15000)
    parsed = make_parsed_sms(None)

    with pytest.raises(MatchConflict):
        state_machine.settle(payment.id, parsed.sms_id)


class ExplodingTickets(TicketOrders):
    def mark_settled(self, db, payment, reference):
        raise RuntimeError("ticket service write failed")


def test_dependent_failure_rolls_back_everything(session_factory, make_payment, make_parsed_sms):
    """Nothing from a failed settlement survives: no claim, no audit, no event."""

    dependents = default_dependents()
    dependents["ticket"] = ExplodingTickets()
    machine = SettlementStateMachine(session_factory, dependents=dependents, audit=AuditLog())
    payment = make_payment(15000)
    parsed = make_parsed_sms(15000)

    with pytest.raises(RuntimeError):
        machine.settle(payment.id, parsed.sms_id)

    with session_factory() as db:
        stored = db.get(Payment, payment.id)
        assert stored.status == "pending"
        assert stored.state_version == 0
        assert stored.parsed_sms_id is None
        assert db.get(ParsedSms, parsed.id).matched_entity is None
        assert db.execute(select(AuditLogEntry)).scalars().all() == []
        assert db.execute(select(OutboxEvent)).scalars().all() == []


def test_pending_payment_cannot_fail_directly(state_machine, make_payment):
    payment = make_payment(15000)

    with pytest.raises(InvalidTransition):
        state_machine.fail(payment.id, "no money arrived", "operator-1")


def test_fail_from_manual_review(session_factory, state_machine, make_payment):
    payment = make_payment(15000)
    with session_factory() as db:
        state_machine.hold_for_review(db, payment.id, "low_confidence")
        db.commit()

    failed = state_machine.fail(payment.id, "supporter cancelled", "operator-1")

    assert failed.status == "failed"
    assert failed.failure_reason == "supporter cancelled"
    with session_factory() as db:
        assert db.get(TicketOrder, payment.ticket_order_id).status == "failed"
        actions = [e.action for e in db.execute(select(AuditLogEntry).order_by(AuditLogEntry.at)).scalars()]
    assert actions == ["payment.hold", "payment.fail"]


def test_reverse_releases_the_sms(session_factory, state_machine, make_payment, make_parsed_sms):
    payment = make_payment(15000)
    parsed = make_parsed_sms(15000)
    state_machine.settle(payment.id, parsed.sms_id)

    reversed_payment = state_machine.reverse(payment.id, "chargeback", "admin-1")

    assert reversed_payment.status == "failed"
    assert reversed_payment.parsed_sms_id is None
    assert reversed_payment.meta["reversed_parsed_sms_id"] == parsed.id
    with session_factory() as db:
        assert db.get(ParsedSms, parsed.id).matched_entity is None
        assert db.get(TicketOrder, payment.ticket_order_id).status == "failed"
        reversal = db.execute(select(OutboxEvent).where(OutboxEvent.event_type == "payments.reversed")).scalar_one()
    assert reversal.aggregate_id == payment.id


def test_only_confirmed_payments_can_be_reversed(state_machine, make_payment):
    payment = make_payment(15000)

    with pytest.raises(InvalidTransition):
        state_machine.reverse(payment.id, "chargeback", "admin-1")
