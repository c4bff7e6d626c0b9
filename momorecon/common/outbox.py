"""Transactional outbox + consumer inbox shared by every service.

All reconciliation services write to the same database, so there is one
`outbox_events` table and one `inbox_events` table. Rows are written in the
same transaction as the state change they describe; the publisher loop claims
them with `FOR UPDATE SKIP LOCKED` and pushes them to Kafka.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import DateTime, String, UniqueConstraint, func, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from momorecon.common.db import Base, JsonType
from momorecon.common.events import EventEnvelope
from momorecon.common.logging import logger
from momorecon.common.metrics import (
    duplicate_events_skipped_total,
    outbox_oldest_pending_age_seconds,
    outbox_pending_total,
)


class OutboxEvent(Base):
    """Events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InboxEvent(Base):
    """Deduplication table for consumed Kafka events."""

    __tablename__ = "inbox_events"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def enqueue_event(
    db,
    topic: str,
    aggregate_type: str,
    aggregate_id: str,
    trace_id: str,
    payload: dict,
) -> EventEnvelope:
    """Stage one envelope in the outbox inside the caller's transaction."""

    event = EventEnvelope(
        event_type=topic,
        aggregate_id=aggregate_id,
        trace_id=trace_id,
        payload=payload,
    )
    db.add(
        OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=topic,
            topic=topic,
            payload=event.model_dump(),
        )
    )
    return event


def inbox_seen(db, event_id: str, service_name: str) -> bool:
    existing = db.execute(
        select(InboxEvent).where(
            InboxEvent.event_id == event_id,
            InboxEvent.consumed_by_service == service_name,
        )
    ).scalar_one_or_none()
    return existing is not None


def mark_inbox(db, event_id: str, service_name: str) -> None:
    db.add(InboxEvent(event_id=event_id, consumed_by_service=service_name))


def record_duplicate_skip(service_name: str, event: EventEnvelope) -> None:
    logger.info("duplicate event skipped topic=%s event_id=%s", event.event_type, event.event_id)
    duplicate_events_skipped_total.labels(service=service_name, topic=event.event_type).inc()


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count = (
        db.execute(select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    oldest_pending = db.execute(
        select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def outbox_publisher(session_factory, kafka, service_name: str) -> None:
    """Continuously publish and ack pending outbox events."""

    while True:
        with session_factory() as db:
            rows = claim_outbox_batch(db, OutboxEvent, limit=100)
            update_outbox_backlog_metrics(db, OutboxEvent, service_name)
            db.commit()
        for row in rows:
            try:
                await kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with session_factory() as db:
                    mark_outbox_sent(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, service_name)
                    db.commit()
            except Exception as exc:
                logger.exception("%s outbox publish failed: %s", service_name, exc)
                with session_factory() as db:
                    requeue_outbox_event(db, OutboxEvent, row["id"])
                    update_outbox_backlog_metrics(db, OutboxEvent, service_name)
                    db.commit()
        await asyncio.sleep(0.5)
