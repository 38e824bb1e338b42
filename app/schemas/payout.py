"""Vendor payout schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.payout import PayoutStatus


class PayoutAccountSetup(BaseModel):
    vendor_id: str = Field(min_length=1, max_length=64)
    destination_account_id: str = Field(min_length=1, max_length=128)
    auto_payout_enabled: bool = True
    minimum_payout_amount: int | None = Field(default=None, ge=0)


class PayoutAccountRead(BaseModel):
    id: int
    vendor_id: str
    destination_account_id: str
    auto_payout_enabled: bool
    minimum_payout_amount: int | None
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    model_config = ConfigDict(from_attributes=True)


class PayoutRead(BaseModel):
    id: int
    vendor_id: str
    payment_id: int
    milestone_id: int | None
    amount: int
    currency: str
    status: PayoutStatus
    retry_count: int
    eligible_at: datetime
    last_attempt_at: datetime | None
    completed_at: datetime | None
    external_transfer_id: str | None
    held_reason: str | None
    manual_requested: bool

    model_config = ConfigDict(from_attributes=True)
