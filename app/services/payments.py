"""Payment orchestration: create, resume, refund and the effects of transitions.

The state machine in :mod:`app.services.payment_state` decides; this module
loads and locks the records, calls the processor, executes the effects the
decision asks for and writes the audit trail.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.models.booking import Booking, BookingStatus
from app.models.escrow import EscrowAccount
from app.models.payment import PaymentRecord, PaymentStatus
from app.models.payout import PayoutRecord, PayoutStatus
from app.services import escrow as escrow_service
from app.services.alerts import create_alert
from app.services.bookings import get_booking, set_booking_status
from app.services.commission import calculate_fee
from app.services.idempotency import get_existing_by_key
from app.services.payment_state import (
    ActionExpired,
    CreditEscrow,
    EnqueuePayout,
    PaymentEvent,
    PaymentSnapshot,
    ProcessorAcknowledged,
    ProcessorRejected,
    RaiseAlert,
    RebalancePayouts,
    RefundEscrow,
    RefundRequested,
    ResumeRequested,
    SetBookingStatus,
    Transition,
    decide,
)
from app.services.payouts import enqueue_payment_payout, rebalance_payment_payouts
from app.services.processor_events import PaymentSucceeded
from app.services.psp_stripe import PaymentProcessor
from app.utils.audit import log_audit, log_status_change
from app.utils.errors import (
    InvalidAmount,
    InvalidTransition,
    MilestoneNotFound,
    PaymentExpired,
    PaymentNotFound,
    ProcessorError,
    ProcessorUnavailable,
    RefundExceedsHeld,
    UnsupportedCurrency,
)
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

_SETTLED = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)


# --- Lookups --------------------------------------------------------------
def get_payment(db: Session, payment_id: int, *, for_update: bool = False) -> PaymentRecord:
    stmt = select(PaymentRecord).where(PaymentRecord.id == payment_id)
    if for_update:
        stmt = stmt.with_for_update()
    payment = db.execute(stmt).scalar_one_or_none()
    if payment is None:
        raise PaymentNotFound(details={"payment_id": payment_id})
    return payment


def find_by_external_id(db: Session, external_id: str, *, for_update: bool = False) -> PaymentRecord | None:
    stmt = select(PaymentRecord).where(PaymentRecord.external_transaction_id == external_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def snapshot_of(payment: PaymentRecord) -> PaymentSnapshot:
    booking = payment.booking
    escrowed = payment.escrow_id is not None
    if payment.status not in _SETTLED:
        # Settled payments were either credited to escrow or paid out directly.
        escrowed = escrowed or bool(booking.milestones) or booking.escrow is not None
    return PaymentSnapshot(
        status=payment.status,
        amount=payment.amount,
        external_transaction_id=payment.external_transaction_id,
        refunded_amount=payment.refunded_amount,
        released_amount=payment.released_amount,
        escrowed=escrowed,
        booking_status_before=payment.booking_status_before,
    )


# --- Applying decisions ---------------------------------------------------
def _execute_effect(
    db: Session,
    payment: PaymentRecord,
    effect: Any,
    *,
    actor: str,
    event_id: str | None,
    refund_reason: str | None,
    settings: Settings,
) -> None:
    if isinstance(effect, SetBookingStatus):
        set_booking_status(db, payment.booking, effect.status, actor=actor, event_id=event_id)
    elif isinstance(effect, CreditEscrow):
        escrow_service.credit_escrow(db, payment, actor=actor, event_id=event_id)
    elif isinstance(effect, RefundEscrow):
        escrow_service.refund_escrow(
            db,
            payment.escrow_id,
            effect.amount,
            reason=refund_reason,
            actor=actor,
            idempotency_key=f"payment:{payment.id}:refund:{payment.refunded_amount}",
            event_id=event_id,
        )
    elif isinstance(effect, EnqueuePayout):
        enqueue_payment_payout(db, payment, settings=settings)
    elif isinstance(effect, RebalancePayouts):
        rebalance_payment_payouts(db, payment, event_id=event_id)
    elif isinstance(effect, RaiseAlert):
        create_alert(
            db,
            alert_type=effect.alert_type,
            message=effect.message,
            payload={
                "payment_id": payment.id,
                "external_transaction_id": payment.external_transaction_id,
                "event_id": event_id,
            },
        )
    else:
        raise TypeError(f"Unsupported payment effect: {type(effect).__name__}")


def apply_transition(
    db: Session,
    payment: PaymentRecord,
    transition: Transition,
    *,
    actor: str,
    event_id: str | None = None,
    refund_reason: str | None = None,
    settings: Settings | None = None,
) -> Transition:
    """Write a decided transition onto ``payment`` and run its effects. Does not commit."""

    settings = settings or get_settings()
    if not transition.applied:
        logger.info(
            "Payment event not applied",
            extra={
                "payment_id": payment.id,
                "status": payment.status.value,
                "reason": transition.reason,
                "event_id": event_id,
            },
        )
    now = utcnow()
    current = transition.previous
    for hop in transition.path:
        log_status_change(
            db,
            actor=actor,
            entity="Payment",
            entity_id=payment.id,
            previous=current.value,
            new=hop.value,
            event_id=event_id,
            data={"external_transaction_id": transition.updates.get("external_transaction_id")},
        )
        current = hop
    for attr, value in transition.updates.items():
        setattr(payment, attr, value)
    if transition.applied:
        payment.status = transition.target
        if transition.target == PaymentStatus.REQUIRES_ACTION:
            payment.requires_action_at = now
        elif transition.target in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            payment.processed_at = now

    for effect in transition.effects:
        _execute_effect(
            db,
            payment,
            effect,
            actor=actor,
            event_id=event_id,
            refund_reason=refund_reason,
            settings=settings,
        )
    db.flush()
    return transition


def apply_event(
    db: Session,
    payment: PaymentRecord,
    event: PaymentEvent,
    *,
    actor: str,
    event_id: str | None = None,
    settings: Settings | None = None,
) -> Transition:
    settings = settings or get_settings()
    transition = decide(snapshot_of(payment), event)
    return apply_transition(db, payment, transition, actor=actor, event_id=event_id, settings=settings)


# --- Create -----------------------------------------------------------------
def _validate_request(
    db: Session,
    *,
    booking_id: int,
    amount: int,
    currency: str,
    milestone_id: int | None,
    settings: Settings,
) -> tuple[Booking, str]:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(details={"amount": amount})
    code = (currency or "").strip().upper()
    if code not in settings.SUPPORTED_CURRENCIES:
        raise UnsupportedCurrency(details={"currency": currency, "supported": settings.SUPPORTED_CURRENCIES})
    booking = get_booking(db, booking_id)
    if code != booking.currency.upper():
        raise UnsupportedCurrency(
            "Payment currency must match the booking currency.",
            details={"currency": code, "booking_currency": booking.currency},
        )
    if booking.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
        raise InvalidTransition(
            "Booking no longer accepts payments.",
            details={"booking_id": booking.id, "booking_status": booking.status.value},
        )
    if milestone_id is not None and all(m.id != milestone_id for m in booking.milestones):
        raise MilestoneNotFound(details={"milestone_id": milestone_id, "booking_id": booking_id})
    return booking, code


def _submit(
    db: Session,
    processor: PaymentProcessor,
    payment: PaymentRecord,
    *,
    actor: str,
    settings: Settings,
) -> PaymentRecord:
    log_context = {"payment_id": payment.id, "booking_id": payment.booking_id}
    try:
        intent = processor.create_payment_intent(
            amount=payment.amount,
            currency=payment.currency,
            idempotency_key=f"payment-intent:{payment.idempotency_key}",
            metadata={"payment_id": str(payment.id), "booking_id": str(payment.booking_id)},
        )
    except ProcessorUnavailable:
        # The record stays PENDING; the webhook (or a retry with the same key) settles it.
        logger.warning("Processor unavailable during payment create", extra=log_context)
        raise
    except ProcessorError as exc:
        apply_event(db, payment, ProcessorRejected(reason=exc.message), actor=actor, settings=settings)
        db.commit()
        logger.info("Payment rejected by processor", extra={**log_context, "reason": exc.message})
        raise

    apply_event(
        db,
        payment,
        ProcessorAcknowledged(
            external_transaction_id=intent.id,
            client_secret=intent.client_secret,
            requires_action=intent.requires_action,
        ),
        actor=actor,
        settings=settings,
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment submitted to processor",
        extra={**log_context, "status": payment.status.value},
    )
    return payment


def create_payment(
    db: Session,
    processor: PaymentProcessor,
    *,
    booking_id: int,
    amount: int,
    currency: str,
    idempotency_key: str,
    milestone_id: int | None = None,
    actor: str = "organizer",
    settings: Settings | None = None,
) -> PaymentRecord:
    """Record a payment for a booking and open the processor intent.

    Replaying the same idempotency key returns the stored record; a record
    left PENDING by a processor timeout is resubmitted with the same
    processor idempotency key.
    """

    settings = settings or get_settings()
    existing = get_existing_by_key(db, PaymentRecord, idempotency_key)
    if existing is not None:
        logger.info("Idempotent payment reused", extra={"payment_id": existing.id})
        if existing.status == PaymentStatus.PENDING and existing.external_transaction_id is None:
            return _submit(db, processor, existing, actor=actor, settings=settings)
        return existing

    booking, code = _validate_request(
        db,
        booking_id=booking_id,
        amount=amount,
        currency=currency,
        milestone_id=milestone_id,
        settings=settings,
    )
    quote = calculate_fee(booking.category, amount)
    if quote.net_amount <= 0:
        raise InvalidAmount(
            "Amount does not cover the platform fee.",
            details={"amount": amount, "fee_amount": quote.fee_amount},
        )

    payment = PaymentRecord(
        booking_id=booking.id,
        milestone_id=milestone_id,
        amount=amount,
        currency=code,
        category=booking.category,
        applied_rate=quote.applied_rate,
        fee_amount=quote.fee_amount,
        net_amount=quote.net_amount,
        refunded_amount=0,
        released_amount=0,
        status=PaymentStatus.PENDING,
        idempotency_key=idempotency_key,
        booking_status_before=booking.status,
    )
    db.add(payment)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_CREATED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "booking_id": booking.id,
            "milestone_id": milestone_id,
            "amount": amount,
            "currency": code,
            "fee_amount": quote.fee_amount,
            "applied_rate": str(quote.applied_rate),
        },
    )
    db.commit()
    db.refresh(payment)
    return _submit(db, processor, payment, actor=actor, settings=settings)


# --- Resume / expiry --------------------------------------------------------
def _action_deadline(payment: PaymentRecord, settings: Settings) -> datetime | None:
    started = as_utc(payment.requires_action_at)
    if started is None:
        return None
    return started + timedelta(minutes=settings.PAYMENT_ACTION_EXPIRY_MINUTES)


def resume_payment(
    db: Session,
    payment_id: int,
    *,
    actor: str = "organizer",
    now: datetime | None = None,
    settings: Settings | None = None,
) -> PaymentRecord:
    """Re-enter PROCESSING after the customer completed the required action."""

    settings = settings or get_settings()
    now = now or utcnow()
    payment = get_payment(db, payment_id, for_update=True)
    deadline = _action_deadline(payment, settings)
    if payment.status == PaymentStatus.REQUIRES_ACTION and deadline is not None and deadline <= now:
        apply_event(db, payment, ActionExpired(), actor="system", settings=settings)
        db.commit()
        raise PaymentExpired(details={"payment_id": payment.id})

    apply_event(db, payment, ResumeRequested(), actor=actor, settings=settings)
    db.commit()
    db.refresh(payment)
    return payment


def expire_abandoned_payments(
    db: Session,
    processor: PaymentProcessor | None,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> int:
    """Fail REQUIRES_ACTION payments left past the expiry window.

    The processor is asked first: an intent that actually succeeded is
    completed instead, and abandoned intents are cancelled best-effort.
    """

    settings = settings or get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.PAYMENT_ACTION_EXPIRY_MINUTES)
    stale_ids = db.scalars(
        select(PaymentRecord.id).where(
            PaymentRecord.status == PaymentStatus.REQUIRES_ACTION,
            PaymentRecord.requires_action_at <= cutoff,
        )
    ).all()

    expired = 0
    for payment_id in stale_ids:
        payment = get_payment(db, payment_id, for_update=True)
        intent_id = payment.external_transaction_id
        if processor is not None and intent_id:
            try:
                intent = processor.retrieve_payment_intent(intent_id)
            except ProcessorError as exc:
                logger.warning(
                    "Could not query processor for stale payment",
                    extra={"payment_id": payment.id, "error": exc.code},
                )
                db.commit()
                continue
            if intent.status == "succeeded":
                apply_event(
                    db,
                    payment,
                    PaymentSucceeded(
                        event_id=f"poll:{intent_id}",
                        kind="payment_intent.succeeded",
                        created_at=now,
                        intent_id=intent_id,
                        amount_received=payment.amount,
                        currency=payment.currency,
                        payment_id=payment.id,
                    ),
                    actor="system",
                    event_id=f"poll:{intent_id}",
                    settings=settings,
                )
                db.commit()
                continue
            try:
                processor.cancel_payment_intent(intent_id)
            except ProcessorError as exc:
                logger.info(
                    "Best-effort intent cancel failed",
                    extra={"payment_id": payment.id, "error": exc.code},
                )

        apply_event(db, payment, ActionExpired(), actor="system", settings=settings)
        db.commit()
        expired += 1
        logger.info("Abandoned payment expired", extra={"payment_id": payment.id})
    return expired


# --- Refunds ----------------------------------------------------------------
def refund_payment(
    db: Session,
    processor: PaymentProcessor,
    payment_id: int,
    *,
    amount: int | None = None,
    reason: str | None = None,
    actor: str = "organizer",
    settings: Settings | None = None,
) -> PaymentRecord:
    """Refund part or all of a settled payment through the processor."""

    settings = settings or get_settings()
    payment = get_payment(db, payment_id, for_update=True)
    if amount is None:
        amount = payment.refundable_amount
    transition = decide(snapshot_of(payment), RefundRequested(amount=amount, reason=reason))

    if payment.escrow_id is not None:
        escrow = escrow_service.lock_escrow(db, payment.escrow_id)
        if amount > escrow.held_amount:
            raise RefundExceedsHeld(details={"escrow_id": escrow.id, "payment_id": payment.id})
    if not payment.external_transaction_id:
        raise InvalidTransition(
            "Payment has no processor transaction to refund.",
            details={"payment_id": payment.id},
        )

    refunded_total = payment.refunded_amount + amount
    refund = processor.create_refund(
        intent_id=payment.external_transaction_id,
        amount=amount,
        idempotency_key=f"refund:{payment.id}:{refunded_total}",
    )
    apply_transition(
        db,
        payment,
        transition,
        actor=actor,
        event_id=f"refund:{refund.id}",
        refund_reason=reason,
        settings=settings,
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment refunded",
        extra={"payment_id": payment.id, "amount": amount, "refunded_amount": payment.refunded_amount},
    )
    return payment


def refund_escrow_funds(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    *,
    amount: int,
    reason: str | None = None,
    actor: str = "organizer",
    settings: Settings | None = None,
) -> EscrowAccount:
    """Refund held escrow funds, spread over the payments that funded them.

    Funds not backed by any payment are returned on the ledger only and
    raised for manual processing.
    """

    settings = settings or get_settings()
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(details={"amount": amount})
    escrow = escrow_service.lock_escrow(db, escrow_id)
    if amount > escrow.held_amount:
        raise RefundExceedsHeld(details={"escrow_id": escrow.id})

    payments = db.scalars(
        select(PaymentRecord)
        .where(PaymentRecord.escrow_id == escrow.id, PaymentRecord.status.in_(list(_SETTLED)))
        .order_by(PaymentRecord.id.desc())
    ).all()
    remaining = amount
    for payment in payments:
        if remaining == 0:
            break
        chunk = min(remaining, payment.refundable_amount)
        if chunk <= 0:
            continue
        refund_payment(db, processor, payment.id, amount=chunk, reason=reason, actor=actor, settings=settings)
        remaining -= chunk

    if remaining:
        escrow_service.refund_escrow(db, escrow.id, remaining, reason=reason, actor=actor)
        create_alert(
            db,
            alert_type="ESCROW_REFUND_UNBACKED",
            message="Escrow refund is not backed by a processor payment.",
            payload={"escrow_id": escrow.id, "amount": remaining},
        )
        db.commit()
    db.refresh(escrow)
    return escrow


def cancel_escrow_funds(
    db: Session,
    processor: PaymentProcessor,
    escrow_id: int,
    *,
    reason: str | None = None,
    actor: str = "organizer",
    settings: Settings | None = None,
) -> EscrowAccount:
    """Refund everything still held, then close the escrow and its milestones."""

    escrow = escrow_service.get_escrow(db, escrow_id)
    if escrow.held_amount:
        refund_escrow_funds(
            db,
            processor,
            escrow.id,
            amount=escrow.held_amount,
            reason=reason or "escrow_cancelled",
            actor=actor,
            settings=settings,
        )
    return escrow_service.cancel_escrow(db, escrow.id, reason=reason, actor=actor)


# --- Queries ----------------------------------------------------------------
def payment_history(
    db: Session,
    *,
    party_id: str,
    role: str,
    limit: int = 100,
    offset: int = 0,
) -> list[PaymentRecord]:
    """Payments made by an organizer or received by a vendor, newest first."""

    party_column = Booking.vendor_id if role.upper() == "VENDOR" else Booking.organizer_id
    stmt = (
        select(PaymentRecord)
        .join(Booking, Booking.id == PaymentRecord.booking_id)
        .where(party_column == party_id)
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def booking_invoice(db: Session, booking_id: int) -> dict[str, Any]:
    """Financial summary of a booking: charges, commission, refunds, escrow and payouts."""

    booking = get_booking(db, booking_id)
    payments = db.scalars(
        select(PaymentRecord).where(PaymentRecord.booking_id == booking.id).order_by(PaymentRecord.id)
    ).all()
    settled = [payment for payment in payments if payment.status in _SETTLED]
    payouts = db.scalars(
        select(PayoutRecord)
        .join(PaymentRecord, PaymentRecord.id == PayoutRecord.payment_id)
        .where(PaymentRecord.booking_id == booking.id)
        .order_by(PayoutRecord.id)
    ).all()
    escrow = escrow_service.get_escrow_for_booking(db, booking.id)

    gross = sum(payment.amount for payment in settled)
    refunded = sum(payment.refunded_amount for payment in settled)
    fees = sum(payment.fee_amount for payment in settled)
    return {
        "booking_id": booking.id,
        "organizer_id": booking.organizer_id,
        "vendor_id": booking.vendor_id,
        "category": booking.category,
        "currency": booking.currency,
        "booking_amount": booking.amount,
        "booking_status": booking.status.value,
        "amount_paid": gross,
        "amount_refunded": refunded,
        "platform_fee": fees,
        "vendor_net": gross - fees,
        "balance_due": max(0, booking.amount - (gross - refunded)),
        "payments": [
            {
                "id": payment.id,
                "milestone_id": payment.milestone_id,
                "amount": payment.amount,
                "fee_amount": payment.fee_amount,
                "net_amount": payment.net_amount,
                "refunded_amount": payment.refunded_amount,
                "status": payment.status.value,
                "processed_at": payment.processed_at,
            }
            for payment in payments
        ],
        "escrow": (
            {
                "id": escrow.id,
                "status": escrow.status.value,
                "held_amount": escrow.held_amount,
                "released_amount": escrow.released_amount,
                "refunded_amount": escrow.refunded_amount,
            }
            if escrow
            else None
        ),
        "payouts": [
            {"id": payout.id, "amount": payout.amount, "status": payout.status.value}
            for payout in payouts
        ],
        "paid_out": sum(payout.amount for payout in payouts if payout.status == PayoutStatus.COMPLETED),
    }


__all__ = [
    "get_payment",
    "find_by_external_id",
    "snapshot_of",
    "apply_transition",
    "apply_event",
    "create_payment",
    "resume_payment",
    "expire_abandoned_payments",
    "refund_payment",
    "refund_escrow_funds",
    "cancel_escrow_funds",
    "payment_history",
    "booking_invoice",
]
