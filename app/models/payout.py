"""Vendor payout models."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PayoutStatus(str, PyEnum):
    """Possible statuses for a vendor payout."""

    PENDING = "PENDING"
    HELD = "HELD"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Payouts that still count against the vendor's entitlement.
ACTIVE_PAYOUT_STATUSES = (
    PayoutStatus.PENDING,
    PayoutStatus.HELD,
    PayoutStatus.PROCESSING,
    PayoutStatus.COMPLETED,
)


class PayoutRecord(Base):
    """A vendor's share of a payment, waiting for (or carried by) a transfer."""

    __tablename__ = "payout_records"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_positive_amount"),
        CheckConstraint("retry_count >= 0", name="ck_payout_retry_count_non_negative"),
        Index("ix_payout_records_vendor_status", "vendor_id", "status"),
        Index("ix_payout_records_eligible_at", "eligible_at"),
    )

    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payment_records.id"), nullable=False, index=True)
    milestone_id: Mapped[int | None] = mapped_column(ForeignKey("milestones.id"), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(SqlEnum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    eligible_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # One transfer may carry a batch of payouts for the same vendor.
    external_transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    held_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    manual_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    payment = relationship("PaymentRecord")


class VendorPayoutAccount(Base):
    """Vendor payout configuration and the processor's view of the connected account."""

    __tablename__ = "vendor_payout_accounts"

    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    destination_account_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    auto_payout_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    minimum_payout_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
