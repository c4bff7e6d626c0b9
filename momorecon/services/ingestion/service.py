"""Ingestion gateway.

Stores each unique carrier delivery once and schedules parsing through the
outbox. Uniqueness is enforced by the UNIQUE `dedup_key` column: the insert
either wins or hits `IntegrityError`, in which case the existing row is
returned. There is no read-then-write window.
"""

import hashlib
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from momorecon.common.clock import as_utc, utcnow
from momorecon.common.config import settings
from momorecon.common.errors import IngestionError, MatchConflict
from momorecon.common.events import SMS_RECEIVED
from momorecon.common.logging import log_context, logger, trace_id_ctx
from momorecon.common.metrics import sms_ingested_total
from momorecon.common.outbox import enqueue_event
from momorecon.common.state_machine import SMS_RECEIVED as SMS_STATUS_RECEIVED, validate_sms_transition
from momorecon.services.ingestion.models import RawSmsRecord


MESSAGE_ID_KEYS = ("message_id", "messageId", "msg_id")


def carrier_message_id(metadata: dict | None) -> str | None:
    for name in MESSAGE_ID_KEYS:
        value = (metadata or {}).get(name)
        if value not in (None, ""):
            return str(value).strip() or None
    return None


def dedup_key(from_address: str, text: str, received_at, message_id: str | None = None) -> str:
    """sha256 of sender, text and receipt time floored to the minute (UTC).

    When the relay supplies a carrier message id, sender and id alone form the
    key, so redeliveries match whatever their receipt time.
    """

    if message_id:
        raw = f"{from_address}\nmsg:{message_id}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()
    minute = as_utc(received_at).replace(second=0, microsecond=0)
    raw = f"{from_address}\n{text}\n{minute.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def transition_sms(db, record: RawSmsRecord, new_status: str, lane: str | None = None) -> None:
    """Conditional status change on a raw record; zero rows means a conflict."""

    validate_sms_transition(record.ingest_status, new_status)
    result = db.execute(
        update(RawSmsRecord)
        .where(RawSmsRecord.id == record.id, RawSmsRecord.ingest_status == record.ingest_status)
        .values(ingest_status=new_status, review_lane=lane, updated_at=utcnow())
    )
    if result.rowcount != 1:
        raise MatchConflict(f"sms {record.id} changed concurrently")


class IngestionService:
    """Idempotent insert of raw SMS plus the `sms.received` outbox event."""

    def __init__(self, session_factory, realtime=None, service_name: str | None = None) -> None:
        self.session_factory = session_factory
        self.realtime = realtime
        self.service_name = service_name or settings.service_name

    def _reject(self, reason: str) -> IngestionError:
        sms_ingested_total.labels(service=self.service_name, outcome="rejected").inc()
        logger.warning("sms_rejected reason=%s", reason)
        return IngestionError(reason)

    def ingest(self, req, trace_id: str | None = None) -> tuple[RawSmsRecord, bool]:
        """Return `(record, created)`; a legitimate duplicate is not an error."""

        text = (req.text or "").strip()
        from_address = (req.from_address or "").strip()
        if not text:
            raise self._reject("text is required")
        if not from_address:
            raise self._reject("from_address is required")
        received_at = as_utc(req.received_at) if req.received_at else utcnow()
        key = dedup_key(from_address, text, received_at, carrier_message_id(req.metadata))
        trace_id = trace_id or trace_id_ctx.get() or str(uuid4())

        with self.session_factory() as db:
            record = RawSmsRecord(
                id=str(uuid4()),
                text=text,
                from_address=from_address,
                to_address=(req.to_address or "").strip() or None,
                received_at=received_at,
                dedup_key=key,
                ingest_status=SMS_STATUS_RECEIVED,
                meta=dict(req.metadata or {}),
            )
            db.add(record)
            enqueue_event(
                db,
                SMS_RECEIVED,
                "sms",
                record.id,
                trace_id,
                {"sms_id": record.id, "from_address": from_address, "received_at": received_at.isoformat()},
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.execute(select(RawSmsRecord).where(RawSmsRecord.dedup_key == key)).scalar_one()
                sms_ingested_total.labels(service=self.service_name, outcome="duplicate").inc()
                logger.info("sms_duplicate sms_id=%s", existing.id)
                return existing, False

        with log_context(sms_id=record.id):
            sms_ingested_total.labels(service=self.service_name, outcome="created").inc()
            logger.info("sms_ingested sms_id=%s from=%s", record.id, from_address)
            if self.realtime is not None:
                self.realtime.sms_received(record.id, from_address, received_at)
        return record, True
