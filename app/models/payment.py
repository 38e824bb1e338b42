"""Payment record model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import Base
from .booking import BookingStatus


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment record."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentRecord(Base):
    """A single charge of an organizer for a booking (or one of its milestones)."""

    __tablename__ = "payment_records"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        CheckConstraint("refunded_amount >= 0", name="ck_payment_refunded_non_negative"),
        CheckConstraint("released_amount >= 0", name="ck_payment_released_non_negative"),
        CheckConstraint(
            "refunded_amount + released_amount <= amount",
            name="ck_payment_refund_release_within_amount",
        ),
        Index("ix_payment_records_status", "status"),
        Index("ix_payment_records_booking_status", "booking_id", "status"),
    )

    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    milestone_id: Mapped[int | None] = mapped_column(ForeignKey("milestones.id"), nullable=True, index=True)
    escrow_id: Mapped[int | None] = mapped_column(ForeignKey("escrow_accounts.id"), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    applied_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    fee_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    released_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    external_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    booking_status_before: Mapped[BookingStatus | None] = mapped_column(
        SqlEnum(BookingStatus, name="payment_booking_status"), nullable=True
    )
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    requires_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    booking = relationship("Booking")
    milestone = relationship("Milestone")

    @validates("amount")
    def _validate_amount(self, key: str, value: int) -> int:
        if self.amount is not None and value != self.amount:
            raise ValueError("Payment amount is immutable once recorded.")
        return value

    @validates("external_transaction_id")
    def _validate_external_id(self, key: str, value: str | None) -> str | None:
        current = self.external_transaction_id
        if current is not None and value != current:
            raise ValueError("external_transaction_id cannot change once assigned.")
        return value

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.refunded_amount - self.released_amount
