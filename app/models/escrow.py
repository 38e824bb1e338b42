"""Escrow ledger models."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class EscrowStatus(str, PyEnum):
    """Derived status of an escrow account."""

    OPEN = "OPEN"
    PARTIALLY_RELEASED = "PARTIALLY_RELEASED"
    CLOSED = "CLOSED"


class EscrowAccount(Base):
    """Funds held for a booking until its milestones release them."""

    __tablename__ = "escrow_accounts"
    __table_args__ = (
        CheckConstraint("held_amount >= 0", name="ck_escrow_held_non_negative"),
        CheckConstraint("released_amount >= 0", name="ck_escrow_released_non_negative"),
        CheckConstraint("refunded_amount >= 0", name="ck_escrow_refunded_non_negative"),
        CheckConstraint("held_amount + released_amount = total_amount", name="ck_escrow_conservation"),
    )

    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, unique=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Amount the organizer agreed to fund; held funds only grow from payments.
    committed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    held_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    released_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[EscrowStatus] = mapped_column(SqlEnum(EscrowStatus), nullable=False, default=EscrowStatus.OPEN)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    booking = relationship("Booking")
    events = relationship(
        "EscrowEvent",
        back_populates="escrow",
        cascade="all, delete-orphan",
        order_by="EscrowEvent.id",
    )


class EscrowEvent(Base):
    """Timeline event for an escrow account."""

    __tablename__ = "escrow_events"

    escrow_id: Mapped[int] = mapped_column(ForeignKey("escrow_accounts.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    escrow = relationship("EscrowAccount", back_populates="events")
