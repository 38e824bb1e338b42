"""Booking and milestone records shared with the booking service."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class BookingStatus(str, PyEnum):
    """Lifecycle of a vendor booking as seen by the payments engine."""

    QUOTE_SENT = "QUOTE_SENT"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MilestoneStatus(str, PyEnum):
    """Possible statuses for a booking milestone."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class Booking(Base):
    """A confirmed-or-quoted engagement between an organizer and a vendor."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_booking_positive_amount"),
        Index("ix_bookings_organizer", "organizer_id"),
        Index("ix_bookings_vendor", "vendor_id"),
    )

    organizer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        SqlEnum(BookingStatus), nullable=False, default=BookingStatus.QUOTE_SENT
    )
    payout_delay_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    milestones = relationship(
        "Milestone",
        back_populates="booking",
        order_by="Milestone.idx",
        cascade="all, delete-orphan",
    )
    escrow = relationship("EscrowAccount", uselist=False, viewonly=True)


class Milestone(Base):
    """A deliverable of a booking whose amount is released from escrow."""

    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("booking_id", "idx", name="uq_milestone_booking_idx"),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        CheckConstraint("idx > 0", name="ck_milestone_positive_idx"),
    )

    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    idx: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[MilestoneStatus] = mapped_column(
        SqlEnum(MilestoneStatus), nullable=False, default=MilestoneStatus.PENDING
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    booking = relationship("Booking", back_populates="milestones")
