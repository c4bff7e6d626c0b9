"""Terminal operator resolutions for SMS that never matched a payment."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from momorecon.common.clock import utcnow
from momorecon.common.db import Base


RESOLUTIONS = ("ignore", "linked_elsewhere", "duplicate")


class ManualReviewResolution(Base):
    """One row per resolved SMS; the primary key makes a second resolution fail."""

    __tablename__ = "sms_manual_resolutions"

    sms_id: Mapped[str] = mapped_column(ForeignKey("sms_raw.id"), primary_key=True)
    resolution: Mapped[str] = mapped_column(String)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str] = mapped_column(String)
    resolved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
