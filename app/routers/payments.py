"""Payment endpoints and the processor webhook."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.routers.deps import request_actor
from app.schemas.common import Envelope
from app.schemas.payment import InvoiceRead, PartyRole, PaymentCreate, PaymentRead, RefundCreate
from app.services import payments as payments_service
from app.services.psp_stripe import PaymentProcessor, get_processor
from app.services.reconciler import reconcile_webhook
from app.utils.errors import IdempotencyKeyRequired

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=Envelope[PaymentRead], status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: PaymentCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    actor: str = Depends(request_actor),
):
    if not idempotency_key or not idempotency_key.strip():
        raise IdempotencyKeyRequired()
    payment = payments_service.create_payment(
        db,
        processor,
        booking_id=payload.booking_id,
        amount=payload.amount,
        currency=payload.currency,
        idempotency_key=idempotency_key.strip(),
        milestone_id=payload.milestone_id,
        actor=actor,
    )
    return Envelope(data=PaymentRead.model_validate(payment))


@router.get("/history", response_model=Envelope[list[PaymentRead]])
def payment_history(
    party_id: str = Query(min_length=1),
    role: PartyRole = Query(),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    payments = payments_service.payment_history(db, party_id=party_id, role=role, limit=limit, offset=offset)
    return Envelope(data=[PaymentRead.model_validate(payment) for payment in payments])


@router.get("/invoice/{booking_id}", response_model=Envelope[InvoiceRead])
def booking_invoice(booking_id: int, db: Session = Depends(get_db)):
    return Envelope(data=InvoiceRead.model_validate(payments_service.booking_invoice(db, booking_id)))


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
) -> dict[str, object]:
    """Receive a signed Stripe event; only signature failures are rejected."""

    raw_body = await request.body()
    result = reconcile_webhook(db, raw_body, stripe_signature)
    logger.info("Stripe webhook acknowledged", extra=result)
    return result


@router.get("/{payment_id}", response_model=Envelope[PaymentRead])
def read_payment(payment_id: int, db: Session = Depends(get_db)):
    return Envelope(data=PaymentRead.model_validate(payments_service.get_payment(db, payment_id)))


@router.post("/{payment_id}/resume", response_model=Envelope[PaymentRead])
def resume_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(request_actor),
):
    payment = payments_service.resume_payment(db, payment_id, actor=actor)
    return Envelope(data=PaymentRead.model_validate(payment))


@router.post("/{payment_id}/refund", response_model=Envelope[PaymentRead])
def refund_payment(
    payment_id: int,
    payload: RefundCreate,
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    actor: str = Depends(request_actor),
):
    payment = payments_service.refund_payment(
        db,
        processor,
        payment_id,
        amount=payload.amount,
        reason=payload.reason,
        actor=actor,
    )
    return Envelope(data=PaymentRead.model_validate(payment))


__all__ = ["router"]
