"""Escrow schemas."""
from pydantic import BaseModel, ConfigDict, Field

from app.models.escrow import EscrowStatus
from app.schemas.milestone import MilestoneRead
from app.schemas.payout import PayoutRead


class EscrowCreate(BaseModel):
    booking_id: int = Field(gt=0)
    total_amount: int


class EscrowRead(BaseModel):
    id: int
    booking_id: int
    currency: str
    committed_amount: int
    total_amount: int
    held_amount: int
    released_amount: int
    refunded_amount: int
    status: EscrowStatus

    model_config = ConfigDict(from_attributes=True)


class EscrowReleaseRequest(BaseModel):
    milestone_id: int = Field(gt=0)


class EscrowReleaseRead(BaseModel):
    escrow: EscrowRead
    milestone: MilestoneRead
    released_amount: int
    unbacked_amount: int
    payouts: list[PayoutRead]

    model_config = ConfigDict(from_attributes=True)


class EscrowRefundRequest(BaseModel):
    amount: int
    reason: str | None = Field(default=None, max_length=500)


class EscrowCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
