"""Parser output and versioned classifier prompts."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from momorecon.common.clock import utcnow
from momorecon.common.db import Base, JsonType


class ParsedSms(Base):
    """Structured fields extracted from one raw SMS.

    `matched_entity` is written once (`payment:<id>`) by auto-match or operator
    attach. The UNIQUE constraint is what stops two SMS settling one payment.
    """

    __tablename__ = "sms_parsed"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    sms_id: Mapped[str] = mapped_column(ForeignKey("sms_raw.id"), unique=True)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)
    payer_mask: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    parser_version: Mapped[str] = mapped_column(String)
    degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    matched_entity: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    match_decision: Mapped[str | None] = mapped_column(String, nullable=True)
    candidate_payment_ids: Mapped[list] = mapped_column(JsonType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class ParserPrompt(Base):
    """Versioned extraction instructions sent to the external classifier."""

    __tablename__ = "sms_parser_prompts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    label: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
