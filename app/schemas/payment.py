"""Payment schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.payment import PaymentStatus


class PaymentCreate(BaseModel):
    booking_id: int = Field(gt=0)
    amount: int
    currency: str = Field(min_length=3, max_length=3)
    milestone_id: int | None = Field(default=None, gt=0)

    @field_validator("currency")
    @classmethod
    def _normalise_currency(cls, value: str) -> str:
        return value.upper()


class PaymentRead(BaseModel):
    id: int
    booking_id: int
    milestone_id: int | None
    escrow_id: int | None
    amount: int
    currency: str
    category: str
    applied_rate: Decimal
    fee_amount: int
    net_amount: int
    refunded_amount: int
    released_amount: int
    status: PaymentStatus
    external_transaction_id: str | None
    client_secret: str | None
    failure_reason: str | None
    requires_action_at: datetime | None
    processed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RefundCreate(BaseModel):
    """Omitting ``amount`` refunds everything still refundable."""

    amount: int | None = None
    reason: str | None = Field(default=None, max_length=500)


PartyRole = Literal["ORGANIZER", "VENDOR"]


class InvoicePayment(BaseModel):
    id: int
    milestone_id: int | None
    amount: int
    fee_amount: int
    net_amount: int
    refunded_amount: int
    status: PaymentStatus
    processed_at: datetime | None


class InvoiceEscrow(BaseModel):
    id: int
    status: str
    held_amount: int
    released_amount: int
    refunded_amount: int


class InvoicePayout(BaseModel):
    id: int
    amount: int
    status: str


class InvoiceRead(BaseModel):
    booking_id: int
    organizer_id: str
    vendor_id: str
    category: str
    currency: str
    booking_amount: int
    booking_status: str
    amount_paid: int
    amount_refunded: int
    platform_fee: int
    vendor_net: int
    balance_due: int
    payments: list[InvoicePayment]
    escrow: InvoiceEscrow | None
    payouts: list[InvoicePayout]
    paid_out: int
