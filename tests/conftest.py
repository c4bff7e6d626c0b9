"""Shared fixtures: an in-memory database with every table, plus fakes."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("SERVICE_NAME", "momorecon-tests")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

from datetime import timedelta
from uuid import uuid4

import pytest

from momorecon.common import outbox
from momorecon.common.auth import AUDIT_VIEW, PAYMENTS_REVERSE, SMS_ATTACH, SMS_PARSER_UPDATE, AdminPrincipal
from momorecon.common.clock import utcnow
from momorecon.common.db import Base, make_engine, make_session_factory
from momorecon.services.audit import models as audit_models
from momorecon.services.audit.service import AuditLog
from momorecon.services.ingestion.models import RawSmsRecord
from momorecon.services.ingestion.service import dedup_key
from momorecon.services.notification import models as notification_models
from momorecon.services.reconciler.matcher import Matcher, MatchPolicy
from momorecon.services.reconciler.models import ParsedSms
from momorecon.services.reconciler.parser import SmsParser
from momorecon.services.reconciler.service import ReconciliationPipeline
from momorecon.services.review import models as review_models
from momorecon.services.review.service import ManualReviewService
from momorecon.services.settlement.models import Donation, Membership, Payment, ShopOrder, TicketOrder
from momorecon.services.settlement.service import SettlementStateMachine


class FakeRealtime:
    """Records dashboard notices instead of publishing them to Redis."""

    def __init__(self):
        self.events = []

    def sms_received(self, sms_id, from_address, received_at):
        self.events.append(("sms.received", sms_id))

    def manual_review_required(self, sms_id, amount, lane):
        self.events.append(("sms.manual_review", sms_id, lane))

    def payment_confirmed(self, payment_id, kind, sms_id):
        self.events.append(("payment.confirmed", payment_id, sms_id))


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def realtime():
    return FakeRealtime()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def operator():
    return AdminPrincipal(
        user_id="operator-1",
        permissions=frozenset({SMS_ATTACH, SMS_PARSER_UPDATE, PAYMENTS_REVERSE, AUDIT_VIEW}),
    )


@pytest.fixture
def viewer():
    return AdminPrincipal(user_id="viewer-1", permissions=frozenset({AUDIT_VIEW}))


@pytest.fixture
def state_machine(session_factory, realtime):
    return SettlementStateMachine(session_factory, audit=AuditLog(), realtime=realtime)


@pytest.fixture
def pipeline(session_factory, state_machine, realtime):
    return ReconciliationPipeline(
        session_factory,
        parser=SmsParser(),
        matcher=Matcher(MatchPolicy()),
        state_machine=state_machine,
        realtime=realtime,
    )


@pytest.fixture
def review(session_factory, state_machine, pipeline):
    return ManualReviewService(session_factory, state_machine, pipeline=pipeline)


_DEPENDENTS = {
    "ticket": (TicketOrder, "ticket_order_id", lambda amount: {"total": amount}),
    "shop": (ShopOrder, "shop_order_id", lambda amount: {"total": amount}),
    "membership": (Membership, "membership_id", lambda amount: {"plan_code": "annual"}),
    "donation": (Donation, "donation_id", lambda amount: {"amount": amount}),
}


@pytest.fixture
def make_payment(session_factory):
    """Create a pending payment plus its dependent entity."""

    def factory(amount: int, kind: str = "ticket", created_at=None, meta=None, status: str = "pending") -> Payment:
        model, foreign_key, fields = _DEPENDENTS[kind]
        with session_factory() as db:
            dependent = model(id=str(uuid4()), **fields(amount))
            payment = Payment(
                id=str(uuid4()),
                kind=kind,
                amount=amount,
                currency="RWF",
                status=status,
                meta=dict(meta or {}),
                created_at=created_at or utcnow() - timedelta(seconds=30),
                **{foreign_key: dependent.id},
            )
            db.add_all([dependent, payment])
            db.commit()
        return payment

    return factory


@pytest.fixture
def make_sms(session_factory):
    """Store a raw SMS in `received` state, as ingestion would."""

    def factory(text: str, from_address: str = "M-Money", received_at=None) -> RawSmsRecord:
        received_at = received_at or utcnow()
        with session_factory() as db:
            record = RawSmsRecord(
                id=str(uuid4()),
                text=text,
                from_address=from_address,
                received_at=received_at,
                dedup_key=dedup_key(from_address, text, received_at),
                ingest_status="received",
                meta={},
            )
            db.add(record)
            db.commit()
        return record

    return factory


@pytest.fixture
def make_parsed_sms(session_factory):
    """Store a raw SMS already parsed, bypassing the parser."""

    def factory(amount: int | None, reference: str | None = None, confidence: float = 0.92) -> ParsedSms:
        received_at = utcnow()
        with session_factory() as db:
            record = RawSmsRecord(
                id=str(uuid4()),
                text=f"You have received {amount} RWF from 0788xxxxxx Ref: {reference}",
                from_address="M-Money",
                received_at=received_at,
                dedup_key=dedup_key("M-Money", str(uuid4()), received_at),
                ingest_status="parsed",
                meta={},
            )
            parsed = ParsedSms(
                id=str(uuid4()),
                sms_id=record.id,
                amount=amount,
                currency="RWF",
                reference=reference,
                payer_mask="0788xxxxxx",
                confidence=confidence,
                parser_version="rules-3",
                degraded=False,
                candidate_payment_ids=[],
            )
            db.add_all([record, parsed])
            db.commit()
        return parsed

    return factory
