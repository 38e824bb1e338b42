"""Escrow ledger services.

Every mutation loads the escrow row ``FOR UPDATE`` (the row also carries an
optimistic ``version``), keeps ``held + released == total`` and recomputes
the derived status before flushing.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.booking import Booking, Milestone, MilestoneStatus
from app.models.escrow import EscrowAccount, EscrowEvent, EscrowStatus
from app.models.payment import PaymentRecord, PaymentStatus
from app.models.payout import PayoutRecord
from app.services.alerts import create_alert
from app.services.bookings import get_booking, get_milestone
from app.services.idempotency import get_existing_by_key
from app.services.payouts import enqueue_release_payout
from app.utils.audit import log_audit, log_status_change
from app.utils.errors import (
    DuplicateEscrow,
    EscrowNotFound,
    InsufficientHeldFunds,
    InvalidAmount,
    MilestoneAlreadyReleased,
    MilestoneNotCompleted,
    MilestoneNotFound,
    RefundExceedsHeld,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

_SETTLED_MILESTONES = (MilestoneStatus.RELEASED, MilestoneStatus.REFUNDED)


@dataclass
class ReleaseResult:
    escrow: EscrowAccount
    milestone: Milestone
    released_amount: int
    payouts: list[PayoutRecord] = field(default_factory=list)
    unbacked_amount: int = 0


def _audit(
    db: Session,
    *,
    actor: str,
    action: str,
    escrow: EscrowAccount,
    data: dict[str, Any],
) -> None:
    """Persist an audit trail entry for escrow state changes."""

    log_audit(db, actor=actor, action=action, entity="EscrowAccount", entity_id=escrow.id, data=data)


def _event(
    db: Session,
    escrow: EscrowAccount,
    kind: str,
    amount: int,
    *,
    idempotency_key: str | None = None,
    data: dict[str, Any] | None = None,
) -> EscrowEvent:
    event = EscrowEvent(
        escrow_id=escrow.id,
        kind=kind,
        amount=amount,
        idempotency_key=idempotency_key,
        data_json=data or {},
        at=utcnow(),
    )
    db.add(event)
    return event


def _check_conservation(escrow: EscrowAccount) -> None:
    if escrow.held_amount + escrow.released_amount != escrow.total_amount or escrow.held_amount < 0:
        raise RuntimeError(f"Escrow {escrow.id} ledger out of balance")


def recompute_status(
    db: Session,
    escrow: EscrowAccount,
    *,
    actor: str,
    event_id: str | None = None,
    closing: bool = False,
) -> EscrowStatus:
    """Derive the escrow status from its balances and the booking's milestones.

    An account that never moved money stays OPEN until it is cancelled.
    """

    _check_conservation(escrow)
    milestones = db.scalars(select(Milestone).where(Milestone.booking_id == escrow.booking_id)).all()
    settled = all(m.status in _SETTLED_MILESTONES for m in milestones)
    moved = escrow.total_amount > 0 or escrow.refunded_amount > 0
    if escrow.held_amount == 0 and settled and (moved or closing):
        status = EscrowStatus.CLOSED
    elif escrow.released_amount > 0:
        status = EscrowStatus.PARTIALLY_RELEASED
    else:
        status = EscrowStatus.OPEN

    previous = escrow.status
    if previous != status:
        escrow.status = status
        log_status_change(
            db,
            actor=actor,
            entity="EscrowAccount",
            entity_id=escrow.id,
            previous=previous.value if previous else None,
            new=status.value,
            event_id=event_id,
        )
        if status == EscrowStatus.CLOSED:
            _event(db, escrow, "CLOSED", 0)
    return status


def lock_escrow(db: Session, escrow_id: int) -> EscrowAccount:
    escrow = db.execute(
        select(EscrowAccount).where(EscrowAccount.id == escrow_id).with_for_update()
    ).scalar_one_or_none()
    if escrow is None:
        raise EscrowNotFound(details={"escrow_id": escrow_id})
    return escrow


def get_escrow(db: Session, escrow_id: int) -> EscrowAccount:
    escrow = db.get(EscrowAccount, escrow_id)
    if escrow is None:
        raise EscrowNotFound(details={"escrow_id": escrow_id})
    return escrow


def get_escrow_for_booking(db: Session, booking_id: int, *, for_update: bool = False) -> EscrowAccount | None:
    stmt = select(EscrowAccount).where(EscrowAccount.booking_id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def _open_account(db: Session, booking: Booking, *, committed_amount: int | None = None) -> EscrowAccount:
    escrow = EscrowAccount(
        booking_id=booking.id,
        currency=booking.currency,
        committed_amount=booking.amount if committed_amount is None else committed_amount,
        total_amount=0,
        held_amount=0,
        released_amount=0,
        refunded_amount=0,
        status=EscrowStatus.OPEN,
    )
    db.add(escrow)
    db.flush()
    _event(db, escrow, "CREATED", 0, data={"booking_id": booking.id, "committed_amount": escrow.committed_amount})
    return escrow


def create_escrow(db: Session, booking_id: int, total_amount: int, *, actor: str = "organizer") -> EscrowAccount:
    """Open the booking's escrow account for a commitment of ``total_amount``.

    The account starts unfunded: held funds only come from completed
    payments credited through :func:`credit_escrow`.
    """

    if isinstance(total_amount, bool) or not isinstance(total_amount, int) or total_amount <= 0:
        raise InvalidAmount(details={"amount": total_amount})
    booking = get_booking(db, booking_id)
    if get_escrow_for_booking(db, booking_id) is not None:
        raise DuplicateEscrow(details={"booking_id": booking_id})

    escrow = _open_account(db, booking, committed_amount=total_amount)
    recompute_status(db, escrow, actor=actor)
    _audit(
        db,
        actor=actor,
        action="ESCROW_CREATED",
        escrow=escrow,
        data={"booking_id": booking_id, "committed_amount": total_amount, "currency": escrow.currency},
    )
    db.commit()
    db.refresh(escrow)
    logger.info("Escrow created", extra={"escrow_id": escrow.id, "booking_id": booking_id})
    return escrow


def credit_escrow(
    db: Session,
    payment: PaymentRecord,
    *,
    actor: str = "system",
    event_id: str | None = None,
) -> EscrowAccount:
    """Fund the booking's escrow with a completed payment (get-or-create).

    Crediting the same payment twice is a no-op. Does not commit.
    """

    key = f"payment:{payment.id}:credit"
    escrow = get_escrow_for_booking(db, payment.booking_id, for_update=True)
    if escrow is not None and get_existing_by_key(db, EscrowEvent, key) is not None:
        logger.info("Escrow credit already applied", extra={"escrow_id": escrow.id, "payment_id": payment.id})
        payment.escrow_id = escrow.id
        return escrow
    if escrow is None:
        escrow = _open_account(db, payment.booking)

    escrow.total_amount += payment.amount
    escrow.held_amount += payment.amount
    payment.escrow_id = escrow.id
    if escrow.total_amount > escrow.committed_amount:
        logger.warning(
            "Escrow funded beyond its commitment",
            extra={"escrow_id": escrow.id, "funded": escrow.total_amount, "committed": escrow.committed_amount},
        )
    _event(
        db,
        escrow,
        "CREDIT",
        payment.amount,
        idempotency_key=key,
        data={"payment_id": payment.id, "event_id": event_id},
    )
    recompute_status(db, escrow, actor=actor, event_id=event_id)
    _audit(
        db,
        actor=actor,
        action="ESCROW_CREDITED",
        escrow=escrow,
        data={"payment_id": payment.id, "amount": payment.amount, "held_amount": escrow.held_amount, "event_id": event_id},
    )
    db.flush()
    return escrow


def _backing_payments(db: Session, escrow: EscrowAccount, milestone: Milestone) -> list[PaymentRecord]:
    """Settled payments of the escrow with funds still held, milestone-specific first."""

    payments = db.scalars(
        select(PaymentRecord)
        .where(
            PaymentRecord.escrow_id == escrow.id,
            PaymentRecord.status.in_([PaymentStatus.COMPLETED, PaymentStatus.REFUNDED]),
        )
        .order_by(PaymentRecord.id)
        .with_for_update()
    ).all()
    held = [payment for payment in payments if payment.refundable_amount > 0]
    return sorted(held, key=lambda payment: (payment.milestone_id != milestone.id, payment.id))


def release_milestone(
    db: Session,
    escrow_id: int,
    milestone_id: int,
    *,
    actor: str = "organizer",
) -> ReleaseResult:
    """Move a completed milestone's amount from held to released and queue the vendor payout."""

    escrow = lock_escrow(db, escrow_id)
    milestone = get_milestone(db, milestone_id, for_update=True)
    if milestone.booking_id != escrow.booking_id:
        raise MilestoneNotFound(details={"milestone_id": milestone_id, "escrow_id": escrow_id})
    if milestone.status == MilestoneStatus.RELEASED:
        raise MilestoneAlreadyReleased(details={"milestone_id": milestone_id})
    if milestone.status != MilestoneStatus.COMPLETED:
        raise MilestoneNotCompleted(details={"milestone_id": milestone_id, "status": milestone.status.value})
    if milestone.amount > escrow.held_amount:
        logger.warning(
            "Milestone release exceeds held funds",
            extra={"escrow_id": escrow.id, "milestone_id": milestone.id, "held": escrow.held_amount},
        )
        raise InsufficientHeldFunds(
            details={"escrow_id": escrow.id, "milestone_id": milestone.id}
        )

    amount = milestone.amount
    escrow.held_amount -= amount
    escrow.released_amount += amount
    now = utcnow()
    milestone.status = MilestoneStatus.RELEASED
    milestone.released_at = now
    log_status_change(
        db,
        actor=actor,
        entity="Milestone",
        entity_id=milestone.id,
        previous=MilestoneStatus.COMPLETED.value,
        new=MilestoneStatus.RELEASED.value,
        data={"escrow_id": escrow.id, "amount": amount},
    )

    # Allocate the released amount to the payments that funded it.
    payouts: list[PayoutRecord] = []
    remaining = amount
    for payment in _backing_payments(db, escrow, milestone):
        if remaining == 0:
            break
        chunk = min(remaining, payment.refundable_amount)
        payment.released_amount += chunk
        remaining -= chunk
        payout = enqueue_release_payout(db, payment, milestone=milestone, now=now)
        if payout is not None:
            payouts.append(payout)

    if remaining:
        # Funds deposited without a payment record; the vendor is paid by hand.
        create_alert(
            db,
            alert_type="ESCROW_RELEASE_UNBACKED",
            message="Released escrow funds are not backed by a processor payment.",
            payload={"escrow_id": escrow.id, "milestone_id": milestone.id, "amount": remaining},
        )

    _event(
        db,
        escrow,
        "RELEASE",
        amount,
        idempotency_key=f"milestone:{milestone.id}:release",
        data={"milestone_id": milestone.id, "payout_ids": [payout.id for payout in payouts]},
    )
    recompute_status(db, escrow, actor=actor)
    _audit(
        db,
        actor=actor,
        action="ESCROW_RELEASED",
        escrow=escrow,
        data={
            "milestone_id": milestone.id,
            "amount": amount,
            "held_amount": escrow.held_amount,
            "released_amount": escrow.released_amount,
        },
    )
    db.commit()
    db.refresh(escrow)
    logger.info(
        "Milestone funds released",
        extra={"escrow_id": escrow.id, "milestone_id": milestone.id, "amount": amount, "payouts": len(payouts)},
    )
    return ReleaseResult(
        escrow=escrow,
        milestone=milestone,
        released_amount=amount,
        payouts=payouts,
        unbacked_amount=remaining,
    )


def refund_escrow(
    db: Session,
    escrow_id: int,
    amount: int,
    *,
    reason: str | None = None,
    actor: str = "system",
    idempotency_key: str | None = None,
    event_id: str | None = None,
) -> EscrowAccount:
    """Return ``amount`` of held funds: held and total shrink, refunded grows.

    Ledger only; the processor refund is issued by the payments service.
    Does not commit.
    """

    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(details={"amount": amount})
    escrow = lock_escrow(db, escrow_id)
    if idempotency_key and get_existing_by_key(db, EscrowEvent, idempotency_key) is not None:
        return escrow
    if amount > escrow.held_amount:
        raise RefundExceedsHeld(details={"escrow_id": escrow.id})

    escrow.held_amount -= amount
    escrow.total_amount -= amount
    escrow.refunded_amount += amount
    _event(
        db,
        escrow,
        "REFUND",
        amount,
        idempotency_key=idempotency_key,
        data={"reason": reason, "event_id": event_id},
    )
    recompute_status(db, escrow, actor=actor, event_id=event_id)
    _audit(
        db,
        actor=actor,
        action="ESCROW_REFUNDED",
        escrow=escrow,
        data={"amount": amount, "reason": reason, "held_amount": escrow.held_amount},
    )
    db.flush()
    return escrow


def cancel_escrow(
    db: Session,
    escrow_id: int,
    *,
    reason: str | None = None,
    actor: str = "organizer",
) -> EscrowAccount:
    """Mark unreleased milestones REFUNDED and close the account.

    Held funds must already have been returned; any remainder is refunded on
    the ledger and raised for manual processing.
    """

    escrow = lock_escrow(db, escrow_id)
    if escrow.held_amount:
        leftover = escrow.held_amount
        refund_escrow(db, escrow.id, leftover, reason=reason or "escrow_cancelled", actor=actor)
        create_alert(
            db,
            alert_type="ESCROW_REFUND_UNBACKED",
            message="Escrow cancelled with held funds not backed by a processor payment.",
            payload={"escrow_id": escrow.id, "amount": leftover},
        )

    milestones = db.scalars(
        select(Milestone).where(Milestone.booking_id == escrow.booking_id).with_for_update()
    ).all()
    for milestone in milestones:
        if milestone.status in _SETTLED_MILESTONES:
            continue
        previous = milestone.status
        milestone.status = MilestoneStatus.REFUNDED
        log_status_change(
            db,
            actor=actor,
            entity="Milestone",
            entity_id=milestone.id,
            previous=previous.value,
            new=milestone.status.value,
            data={"escrow_id": escrow.id, "reason": reason},
        )
    recompute_status(db, escrow, actor=actor, closing=True)
    _audit(db, actor=actor, action="ESCROW_CANCELLED", escrow=escrow, data={"reason": reason})
    db.commit()
    db.refresh(escrow)
    logger.info("Escrow cancelled", extra={"escrow_id": escrow.id, "status": escrow.status.value})
    return escrow


__all__ = [
    "ReleaseResult",
    "recompute_status",
    "lock_escrow",
    "get_escrow",
    "get_escrow_for_booking",
    "create_escrow",
    "credit_escrow",
    "release_milestone",
    "refund_escrow",
    "cancel_escrow",
]
