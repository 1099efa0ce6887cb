import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from app.domain.bookings.statuses import BookingPaymentStatus
from app.infra.db import Base


class BookingAttempt(Base):
    __tablename__ = "booking_attempts"

    fingerprint: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.event_id"), nullable=False, index=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=BookingPaymentStatus.PENDING.value
    )
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    meeting_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Meeting(Base):
    __tablename__ = "meetings"
    __table_args__ = (UniqueConstraint("event_id", "start_time", name="uq_meetings_event_start"),)

    meeting_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    event_id: Mapped[str] = mapped_column(ForeignKey("events.event_id"), nullable=False, index=True)
    expert_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    guest_email: Mapped[str] = mapped_column(String(255), nullable=False)
    guest_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    guest_notes: Mapped[str | None] = mapped_column(Text)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=BookingPaymentStatus.SUCCEEDED.value
    )
    booking_fingerprint: Mapped[str | None] = mapped_column(String(255), index=True)
    calendar_event_id: Mapped[str | None] = mapped_column(String(255))
    calendar_creation_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    event = relationship("Event")
