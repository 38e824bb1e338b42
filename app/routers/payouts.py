"""Vendor payout endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.payout import PayoutStatus
from app.routers.deps import request_actor
from app.schemas.common import Envelope
from app.schemas.payout import PayoutAccountRead, PayoutAccountSetup, PayoutRead
from app.services import payouts as payouts_service

router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.post("/setup", response_model=Envelope[PayoutAccountRead], status_code=status.HTTP_200_OK)
def setup_payout_account(
    payload: PayoutAccountSetup,
    db: Session = Depends(get_db),
    actor: str = Depends(request_actor),
):
    account = payouts_service.setup_payout_account(
        db,
        vendor_id=payload.vendor_id,
        destination_account_id=payload.destination_account_id,
        auto_payout_enabled=payload.auto_payout_enabled,
        minimum_payout_amount=payload.minimum_payout_amount,
        actor=actor,
    )
    return Envelope(data=PayoutAccountRead.model_validate(account))


@router.get("", response_model=Envelope[list[PayoutRead]])
def list_payouts(
    vendor_id: str = Query(min_length=1),
    payout_status: PayoutStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
):
    payouts = payouts_service.list_payouts(db, vendor_id=vendor_id, status=payout_status)
    return Envelope(data=[PayoutRead.model_validate(payout) for payout in payouts])


@router.post("/{payout_id}/request", response_model=Envelope[PayoutRead])
def request_payout(
    payout_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(request_actor),
):
    payout = payouts_service.request_manual_payout(db, payout_id, actor=actor)
    return Envelope(data=PayoutRead.model_validate(payout))
