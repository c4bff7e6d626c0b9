"""Raw SMS storage owned by the ingestion gateway."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from momorecon.common.clock import utcnow
from momorecon.common.db import Base, JsonType


class RawSmsRecord(Base):
    """One unique carrier delivery, exactly as received."""

    __tablename__ = "sms_raw"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    text: Mapped[str] = mapped_column(Text)
    from_address: Mapped[str] = mapped_column(String, index=True)
    to_address: Mapped[str | None] = mapped_column(String, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # sha256(from_address | text | received_at floored to the minute)
    dedup_key: Mapped[str] = mapped_column(String(64), unique=True)
    ingest_status: Mapped[str] = mapped_column(String, default="received", index=True)
    review_lane: Mapped[str | None] = mapped_column(String, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
