"""Escrow ledger endpoints."""
from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.routers.deps import request_actor
from app.schemas.common import Envelope
from app.schemas.escrow import (
    EscrowCancelRequest,
    EscrowCreate,
    EscrowRead,
    EscrowRefundRequest,
    EscrowReleaseRead,
    EscrowReleaseRequest,
)
from app.services import escrow as escrow_service
from app.services import payments as payments_service
from app.services.psp_stripe import PaymentProcessor, get_processor

router = APIRouter(prefix="/escrows", tags=["escrow"])


@router.post("", response_model=Envelope[EscrowRead], status_code=status.HTTP_201_CREATED)
def create_escrow(
    payload: EscrowCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(request_actor),
):
    escrow = escrow_service.create_escrow(db, payload.booking_id, payload.total_amount, actor=actor)
    return Envelope(data=EscrowRead.model_validate(escrow))


@router.get("/{escrow_id}", response_model=Envelope[EscrowRead])
def read_escrow(escrow_id: int, db: Session = Depends(get_db)):
    return Envelope(data=EscrowRead.model_validate(escrow_service.get_escrow(db, escrow_id)))


@router.post("/{escrow_id}/release", response_model=Envelope[EscrowReleaseRead])
def release_milestone(
    escrow_id: int,
    payload: EscrowReleaseRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(request_actor),
):
    result = escrow_service.release_milestone(db, escrow_id, payload.milestone_id, actor=actor)
    return Envelope(data=EscrowReleaseRead.model_validate(result))


@router.post("/{escrow_id}/refund", response_model=Envelope[EscrowRead])
def refund_escrow(
    escrow_id: int,
    payload: EscrowRefundRequest,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    actor: str = Depends(request_actor),
):
    escrow = payments_service.refund_escrow_funds(
        db, processor, escrow_id, amount=payload.amount, reason=payload.reason, actor=actor
    )
    return Envelope(data=EscrowRead.model_validate(escrow))


@router.post("/{escrow_id}/cancel", response_model=Envelope[EscrowRead])
def cancel_escrow(
    escrow_id: int,
    payload: EscrowCancelRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    actor: str = Depends(request_actor),
):
    reason = payload.reason if payload else None
    escrow = payments_service.cancel_escrow_funds(db, processor, escrow_id, reason=reason, actor=actor)
    return Envelope(data=EscrowRead.model_validate(escrow))
