"""Vendor payouts: enqueueing, the scheduled transfer cycle and transfer outcomes.

Payout rows are the queue. Completing a payment or releasing a milestone only
inserts rows here; transfers are initiated by :func:`run_payout_cycle`, which
the scheduler calls on an interval.
"""
from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.models.booking import Milestone
from app.models.payment import PaymentRecord
from app.models.payout import ACTIVE_PAYOUT_STATUSES, PayoutRecord, PayoutStatus, VendorPayoutAccount
from app.services.alerts import create_alert
from app.services.commission import calculate_fee
from app.services.compliance import ComplianceResult, check_compliance
from app.services.idempotency import get_existing_by_key, payout_key
from app.services.locks import release_lock, try_acquire_lock, vendor_lock_name
from app.services.processor_events import AccountUpdated, PayoutCreated, PayoutFailed, TransferCreated, TransferFailed
from app.services.psp_stripe import PaymentProcessor
from app.utils.audit import log_audit, log_status_change
from app.utils.errors import (
    ProcessorError,
    ProcessorNotConfigured,
    ProcessorUnavailable,
    PayoutNotFound,
    PayoutNotRequestable,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

ACTOR = "payout-scheduler"
_UNPAID = (PayoutStatus.PENDING, PayoutStatus.HELD)


# --- Entitlement ----------------------------------------------------------
def entitled_amount(payment: PaymentRecord) -> int:
    """Vendor share of what is left of ``payment`` after refunds."""

    remaining = payment.amount - payment.refunded_amount
    if remaining <= 0:
        return 0
    return remaining - calculate_fee(payment.category, remaining).fee_amount


def _sum_payouts(db: Session, payment_id: int, statuses: Iterable[PayoutStatus]) -> int:
    stmt = select(func.coalesce(func.sum(PayoutRecord.amount), 0)).where(
        PayoutRecord.payment_id == payment_id,
        PayoutRecord.status.in_(list(statuses)),
    )
    return int(db.scalar(stmt) or 0)


def remaining_entitlement(db: Session, payment: PaymentRecord) -> int:
    return max(0, entitled_amount(payment) - _sum_payouts(db, payment.id, ACTIVE_PAYOUT_STATUSES))


def released_entitlement(payment: PaymentRecord) -> int:
    """Part of the entitlement backed by escrow funds released so far."""

    remaining = payment.amount - payment.refunded_amount
    if remaining <= 0:
        return 0
    entitled = entitled_amount(payment)
    if payment.released_amount >= remaining:
        return entitled
    return entitled * payment.released_amount // remaining


def _eligible_at(payment: PaymentRecord, now: datetime, settings: Settings) -> datetime:
    delay_days = payment.booking.payout_delay_days
    if delay_days is None:
        delay_days = settings.PAYOUT_DELAY_DAYS
    return now + timedelta(days=delay_days)


def _enqueue(
    db: Session,
    payment: PaymentRecord,
    *,
    amount: int,
    key: str,
    milestone: Milestone | None,
    now: datetime,
    settings: Settings,
) -> PayoutRecord | None:
    existing = get_existing_by_key(db, PayoutRecord, key)
    if existing is not None:
        logger.info("Idempotent payout reused", extra={"payout_id": existing.id, "payment_id": payment.id})
        return existing

    capped = min(amount, remaining_entitlement(db, payment))
    if capped <= 0:
        logger.info(
            "Nothing left to pay out for payment",
            extra={"payment_id": payment.id, "requested": amount},
        )
        return None

    payout = PayoutRecord(
        vendor_id=payment.booking.vendor_id,
        payment_id=payment.id,
        milestone_id=milestone.id if milestone else None,
        amount=capped,
        currency=payment.currency,
        status=PayoutStatus.PENDING,
        retry_count=0,
        eligible_at=_eligible_at(payment, now, settings),
        idempotency_key=key,
    )
    db.add(payout)
    db.flush()
    log_audit(
        db,
        actor=ACTOR,
        action="PAYOUT_ENQUEUED",
        entity="Payout",
        entity_id=payout.id,
        data={
            "payment_id": payment.id,
            "milestone_id": payout.milestone_id,
            "vendor_id": payout.vendor_id,
            "amount": payout.amount,
            "eligible_at": payout.eligible_at.isoformat(),
        },
    )
    return payout


def enqueue_payment_payout(
    db: Session,
    payment: PaymentRecord,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> PayoutRecord | None:
    """Queue the vendor's whole net share of a non-escrowed payment."""

    settings = settings or get_settings()
    return _enqueue(
        db,
        payment,
        amount=entitled_amount(payment),
        key=payout_key("payment", payment.id, "payout"),
        milestone=None,
        now=now or utcnow(),
        settings=settings,
    )


def enqueue_release_payout(
    db: Session,
    payment: PaymentRecord,
    *,
    milestone: Milestone,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> PayoutRecord | None:
    """Queue the vendor's share of escrow funds just released from ``payment``.

    Call after ``payment.released_amount`` has grown by the released chunk.
    The share is the part of the payment's entitlement covered by its
    released funds, less what is already queued, so chunked releases add up
    to exactly the entitlement.
    """

    settings = settings or get_settings()
    net = released_entitlement(payment) - _sum_payouts(db, payment.id, ACTIVE_PAYOUT_STATUSES)
    return _enqueue(
        db,
        payment,
        amount=net,
        key=payout_key("milestone", milestone.id, "payment", payment.id, "payout"),
        milestone=milestone,
        now=now or utcnow(),
        settings=settings,
    )


def rebalance_payment_payouts(db: Session, payment: PaymentRecord, *, event_id: str | None = None) -> None:
    """Shrink unpaid payouts so they fit the entitlement left after a refund."""

    committed = _sum_payouts(db, payment.id, (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED))
    allowance = entitled_amount(payment) - committed
    if allowance < 0:
        create_alert(
            db,
            alert_type="PAYOUT_EXCEEDS_ENTITLEMENT",
            message="Vendor was paid more than the refunded payment entitles.",
            payload={"payment_id": payment.id, "committed": committed, "entitled": entitled_amount(payment)},
        )
        allowance = 0

    unpaid = db.scalars(
        select(PayoutRecord)
        .where(PayoutRecord.payment_id == payment.id, PayoutRecord.status.in_(_UNPAID))
        .order_by(PayoutRecord.id)
        .with_for_update()
    ).all()
    for payout in unpaid:
        if payout.amount <= allowance:
            allowance -= payout.amount
            continue
        if allowance > 0:
            log_audit(
                db,
                actor=ACTOR,
                action="PAYOUT_REDUCED",
                entity="Payout",
                entity_id=payout.id,
                data={"previous_amount": payout.amount, "new_amount": allowance, "event_id": event_id},
            )
            payout.amount = allowance
            allowance = 0
            continue
        previous = payout.status
        payout.status = PayoutStatus.CANCELLED
        log_status_change(
            db,
            actor=ACTOR,
            entity="Payout",
            entity_id=payout.id,
            previous=previous.value,
            new=payout.status.value,
            event_id=event_id,
            data={"reason": "payment_refunded"},
        )


# --- Vendor configuration -------------------------------------------------
def setup_payout_account(
    db: Session,
    *,
    vendor_id: str,
    destination_account_id: str,
    auto_payout_enabled: bool = True,
    minimum_payout_amount: int | None = None,
    actor: str = "vendor",
) -> VendorPayoutAccount:
    """Create or update a vendor's payout configuration."""

    account = db.scalars(
        select(VendorPayoutAccount).where(VendorPayoutAccount.vendor_id == vendor_id).with_for_update()
    ).first()
    created = account is None
    if account is None:
        account = VendorPayoutAccount(vendor_id=vendor_id, destination_account_id=destination_account_id)
        db.add(account)
    elif account.destination_account_id != destination_account_id:
        # A new connected account has to be verified again.
        account.charges_enabled = False
        account.payouts_enabled = False
        account.details_submitted = False
    account.destination_account_id = destination_account_id
    account.auto_payout_enabled = auto_payout_enabled
    account.minimum_payout_amount = minimum_payout_amount
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="PAYOUT_ACCOUNT_CREATED" if created else "PAYOUT_ACCOUNT_UPDATED",
        entity="VendorPayoutAccount",
        entity_id=account.id,
        data={
            "vendor_id": vendor_id,
            "destination_account_id": destination_account_id,
            "auto_payout_enabled": auto_payout_enabled,
            "minimum_payout_amount": minimum_payout_amount,
        },
    )
    db.commit()
    db.refresh(account)
    logger.info("Payout account configured", extra={"vendor_id": vendor_id, "created": created})
    return account


def get_payout_account(db: Session, vendor_id: str) -> VendorPayoutAccount | None:
    return db.scalars(select(VendorPayoutAccount).where(VendorPayoutAccount.vendor_id == vendor_id)).first()


def list_payouts(db: Session, *, vendor_id: str, status: PayoutStatus | None = None) -> list[PayoutRecord]:
    stmt = select(PayoutRecord).where(PayoutRecord.vendor_id == vendor_id).order_by(PayoutRecord.id.desc())
    if status is not None:
        stmt = stmt.where(PayoutRecord.status == status)
    return list(db.scalars(stmt).all())


def request_manual_payout(db: Session, payout_id: int, *, actor: str = "vendor") -> PayoutRecord:
    """Flag an unpaid payout for the next cycle.

    A requested payout ignores the minimum threshold and the vendor's
    auto-payout setting; delay, compliance and account checks still apply.
    """

    payout = db.scalars(select(PayoutRecord).where(PayoutRecord.id == payout_id).with_for_update()).first()
    if payout is None:
        raise PayoutNotFound(details={"payout_id": payout_id})
    if payout.status not in _UNPAID:
        raise PayoutNotRequestable(details={"payout_id": payout_id})
    if not payout.manual_requested:
        payout.manual_requested = True
        log_audit(
            db,
            actor=actor,
            action="PAYOUT_MANUAL_REQUESTED",
            entity="Payout",
            entity_id=payout.id,
            data={"vendor_id": payout.vendor_id, "amount": payout.amount},
        )
        db.commit()
        db.refresh(payout)
    return payout


# --- Scheduled cycle ------------------------------------------------------
def _attempt_key(vendor_id: str, payouts: list[PayoutRecord]) -> str:
    ids = ",".join(str(payout.id) for payout in payouts)
    digest = hashlib.sha256(f"{vendor_id}|{ids}".encode()).hexdigest()[:32]
    attempt = max(payout.retry_count for payout in payouts)
    return f"payouts:{digest}:{attempt}"


def _set_status(
    db: Session,
    payout: PayoutRecord,
    status: PayoutStatus,
    *,
    event_id: str | None = None,
    data: dict | None = None,
) -> None:
    previous = payout.status
    if previous == status:
        return
    payout.status = status
    log_status_change(
        db,
        actor=ACTOR,
        entity="Payout",
        entity_id=payout.id,
        previous=previous.value,
        new=status.value,
        event_id=event_id,
        data=data,
    )


def _block_reason(
    payout: PayoutRecord,
    account: VendorPayoutAccount | None,
    compliance: ComplianceResult,
    settings: Settings,
) -> str | None:
    if not compliance.compliant:
        missing = ",".join(doc.value for doc in compliance.missing_requirements)
        return f"compliance_missing:{missing}"
    if account is None:
        return "payout_account_missing"
    if not account.payouts_enabled:
        return "payout_account_not_ready"
    automatic = settings.AUTO_PAYOUT_ENABLED and account.auto_payout_enabled
    if not automatic and not payout.manual_requested:
        return "auto_payout_disabled"
    return None


def _record_failure(
    db: Session,
    payout: PayoutRecord,
    reason: str | None,
    *,
    now: datetime,
    settings: Settings,
    event_id: str | None = None,
) -> None:
    payout.retry_count += 1
    payout.last_error = (reason or "transfer_failed")[:500]
    if payout.retry_count >= settings.PAYOUT_MAX_RETRIES:
        _set_status(db, payout, PayoutStatus.FAILED, event_id=event_id, data={"retry_count": payout.retry_count})
        create_alert(
            db,
            alert_type="PAYOUT_FAILED",
            message="Vendor payout failed after the maximum number of attempts.",
            payload={
                "payout_id": payout.id,
                "vendor_id": payout.vendor_id,
                "amount": payout.amount,
                "retry_count": payout.retry_count,
                "last_error": payout.last_error,
            },
        )
        return

    backoff = min(
        settings.PAYOUT_RETRY_BASE_SECONDS * (2**payout.retry_count),
        settings.PAYOUT_RETRY_MAX_SECONDS,
    )
    payout.eligible_at = now + timedelta(seconds=backoff)
    _set_status(
        db,
        payout,
        PayoutStatus.PENDING,
        event_id=event_id,
        data={"retry_count": payout.retry_count, "retry_in_seconds": backoff},
    )


def process_vendor_payouts(
    db: Session,
    processor: PaymentProcessor,
    vendor_id: str,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> str:
    """Run one payout attempt for a vendor under its lease.

    Returns a short outcome label used for logging and the cycle summary.
    """

    settings = settings or get_settings()
    now = now or utcnow()
    lock_name = vendor_lock_name(vendor_id)
    if not try_acquire_lock(lock_name, ttl_seconds=settings.PAYOUT_LOCK_TTL_SECONDS, db_session=db):
        return "locked"
    try:
        in_flight = db.scalar(
            select(func.count(PayoutRecord.id)).where(
                PayoutRecord.vendor_id == vendor_id,
                PayoutRecord.status == PayoutStatus.PROCESSING,
            )
        )
        if in_flight:
            return "in_flight"

        candidates = db.scalars(
            select(PayoutRecord)
            .where(
                PayoutRecord.vendor_id == vendor_id,
                PayoutRecord.status.in_(_UNPAID),
                PayoutRecord.eligible_at <= now,
            )
            .order_by(PayoutRecord.id)
            .with_for_update()
        ).all()
        if not candidates:
            return "nothing_due"

        account = get_payout_account(db, vendor_id)
        compliance_by_category: dict[str, ComplianceResult] = {}
        ready: dict[str, list[PayoutRecord]] = defaultdict(list)
        for payout in candidates:
            category = payout.payment.category
            if category not in compliance_by_category:
                compliance_by_category[category] = check_compliance(db, vendor_id, category, now=now)
            reason = _block_reason(payout, account, compliance_by_category[category], settings)
            if reason is not None:
                payout.held_reason = reason[:255]
                _set_status(db, payout, PayoutStatus.HELD, data={"held_reason": payout.held_reason})
                continue
            if payout.status == PayoutStatus.HELD:
                payout.held_reason = None
                _set_status(db, payout, PayoutStatus.PENDING, data={"held_reason": None})
            ready[payout.currency].append(payout)

        minimum = settings.MINIMUM_PAYOUT_AMOUNT
        if account is not None and account.minimum_payout_amount is not None:
            minimum = account.minimum_payout_amount

        batch: list[PayoutRecord] = []
        for currency, payouts in sorted(ready.items()):
            total = sum(payout.amount for payout in payouts)
            if total >= minimum or any(payout.manual_requested for payout in payouts):
                batch = payouts
                break
            logger.info(
                "Vendor balance below payout minimum",
                extra={"vendor_id": vendor_id, "currency": currency, "balance": total, "minimum": minimum},
            )
        db.commit()
        if not batch:
            return "held" if not ready else "below_minimum"

        return _transfer_batch(db, processor, vendor_id, batch, account, now=now, settings=settings)
    finally:
        release_lock(lock_name, db_session=db)


def _transfer_batch(
    db: Session,
    processor: PaymentProcessor,
    vendor_id: str,
    batch: list[PayoutRecord],
    account: VendorPayoutAccount,
    *,
    now: datetime,
    settings: Settings,
) -> str:
    amount = sum(payout.amount for payout in batch)
    currency = batch[0].currency
    key = _attempt_key(vendor_id, batch)
    log_context = {"vendor_id": vendor_id, "amount": amount, "currency": currency, "payouts": len(batch)}
    try:
        transfer = processor.create_transfer(
            amount=amount,
            currency=currency,
            destination=account.destination_account_id,
            idempotency_key=key,
            metadata={"vendor_id": vendor_id, "payout_ids": ",".join(str(payout.id) for payout in batch)},
        )
    except ProcessorUnavailable:
        # Records stay as they are; the next cycle retries with the same key.
        logger.warning("Transfer deferred; processor unavailable", extra=log_context)
        return "unavailable"
    except ProcessorNotConfigured:
        logger.error("Transfer skipped; processor not configured", extra=log_context)
        return "not_configured"
    except ProcessorError as exc:
        logger.warning("Transfer rejected by processor", extra={**log_context, "reason": exc.message})
        for payout in batch:
            payout.last_attempt_at = now
            _record_failure(db, payout, exc.message, now=now, settings=settings)
        db.commit()
        return "rejected"

    for payout in batch:
        payout.external_transfer_id = transfer.id
        payout.last_attempt_at = now
        _set_status(db, payout, PayoutStatus.PROCESSING, data={"external_transfer_id": transfer.id})
    db.commit()
    logger.info("Transfer initiated", extra={**log_context, "transfer_id": transfer.id})
    return "initiated"


def due_vendor_ids(db: Session, *, now: datetime) -> list[str]:
    stmt = (
        select(PayoutRecord.vendor_id)
        .where(PayoutRecord.status.in_(_UNPAID), PayoutRecord.eligible_at <= now)
        .distinct()
        .order_by(PayoutRecord.vendor_id)
    )
    return list(db.scalars(stmt).all())


def run_payout_cycle(
    db: Session,
    processor: PaymentProcessor,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> dict[str, str]:
    """Attempt payouts for every vendor with due payouts."""

    settings = settings or get_settings()
    now = now or utcnow()
    outcomes: dict[str, str] = {}
    for vendor_id in due_vendor_ids(db, now=now):
        outcomes[vendor_id] = process_vendor_payouts(db, processor, vendor_id, now=now, settings=settings)
    if outcomes:
        logger.info("Payout cycle finished", extra={"vendors": len(outcomes), "outcomes": outcomes})
    return outcomes


# --- Processor events -----------------------------------------------------
def _payouts_for_transfer(db: Session, transfer_id: str, payout_ids: tuple[int, ...]) -> list[PayoutRecord]:
    """Payouts carried by ``transfer_id``.

    Metadata ids only match payouts that have no transfer recorded yet, so an
    event for an earlier attempt never touches a payout retried under a new
    transfer.
    """
    condition = PayoutRecord.external_transfer_id == transfer_id
    if payout_ids:
        condition = or_(
            condition,
            and_(PayoutRecord.id.in_(payout_ids), PayoutRecord.external_transfer_id.is_(None)),
        )
    stmt = select(PayoutRecord).where(condition).order_by(PayoutRecord.id).with_for_update()
    return list(db.scalars(stmt).all())


def handle_transfer_created(db: Session, event: TransferCreated, *, now: datetime | None = None) -> bool:
    """Complete the payouts carried by an accepted transfer. Returns whether anything changed."""

    now = now or utcnow()
    changed = False
    for payout in _payouts_for_transfer(db, event.transfer_id, event.payout_ids):
        if payout.status != PayoutStatus.PROCESSING:
            logger.info(
                "Transfer event ignored for payout",
                extra={"payout_id": payout.id, "status": payout.status.value, "event_id": event.event_id},
            )
            continue
        if payout.external_transfer_id is None:
            payout.external_transfer_id = event.transfer_id
        payout.completed_at = now
        _set_status(
            db,
            payout,
            PayoutStatus.COMPLETED,
            event_id=event.event_id,
            data={"external_transfer_id": event.transfer_id},
        )
        changed = True
    return changed


def handle_transfer_failed(
    db: Session,
    event: TransferFailed,
    *,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> bool:
    """Count a failed attempt for every in-flight payout of the transfer."""

    settings = settings or get_settings()
    now = now or utcnow()
    changed = False
    for payout in _payouts_for_transfer(db, event.transfer_id, event.payout_ids):
        if payout.status != PayoutStatus.PROCESSING:
            logger.info(
                "Transfer failure ignored for payout",
                extra={"payout_id": payout.id, "status": payout.status.value, "event_id": event.event_id},
            )
            continue
        _record_failure(db, payout, event.failure_reason, now=now, settings=settings, event_id=event.event_id)
        changed = True
    return changed


def sync_payout_account(db: Session, event: AccountUpdated) -> bool:
    """Mirror the processor's view of a connected account."""

    account = db.scalars(
        select(VendorPayoutAccount)
        .where(VendorPayoutAccount.destination_account_id == event.account_id)
        .with_for_update()
    ).first()
    if account is None:
        logger.info("Account update for unknown destination", extra={"event_id": event.event_id})
        return False
    previous = {
        "charges_enabled": account.charges_enabled,
        "payouts_enabled": account.payouts_enabled,
        "details_submitted": account.details_submitted,
    }
    current = {
        "charges_enabled": event.charges_enabled,
        "payouts_enabled": event.payouts_enabled,
        "details_submitted": event.details_submitted,
    }
    if previous == current:
        return False
    account.charges_enabled = event.charges_enabled
    account.payouts_enabled = event.payouts_enabled
    account.details_submitted = event.details_submitted
    log_audit(
        db,
        actor="stripe-webhook",
        action="PAYOUT_ACCOUNT_SYNCED",
        entity="VendorPayoutAccount",
        entity_id=account.id,
        data={"previous": previous, "current": current, "event_id": event.event_id},
    )
    return True


def record_bank_payout(db: Session, event: PayoutCreated | PayoutFailed) -> bool:
    """Audit the connected account's payout to its bank; alert on failure."""

    account = None
    if event.account_id:
        account = db.scalars(
            select(VendorPayoutAccount).where(VendorPayoutAccount.destination_account_id == event.account_id)
        ).first()
    vendor_id = account.vendor_id if account else None
    failed = isinstance(event, PayoutFailed)
    log_audit(
        db,
        actor="stripe-webhook",
        action="BANK_PAYOUT_FAILED" if failed else "BANK_PAYOUT_CREATED",
        entity="VendorPayoutAccount",
        entity_id=account.id if account else None,
        data={
            "vendor_id": vendor_id,
            "payout_ref": event.payout_ref,
            "event_id": event.event_id,
            "amount": getattr(event, "amount", None),
            "failure_reason": getattr(event, "failure_reason", None),
        },
    )
    if failed:
        create_alert(
            db,
            alert_type="BANK_PAYOUT_FAILED",
            message="A connected account payout to the vendor's bank failed.",
            payload={"vendor_id": vendor_id, "payout_ref": event.payout_ref, "reason": event.failure_reason},
        )
    return True


__all__ = [
    "entitled_amount",
    "remaining_entitlement",
    "released_entitlement",
    "enqueue_payment_payout",
    "enqueue_release_payout",
    "rebalance_payment_payouts",
    "setup_payout_account",
    "get_payout_account",
    "list_payouts",
    "request_manual_payout",
    "process_vendor_payouts",
    "due_vendor_ids",
    "run_payout_cycle",
    "handle_transfer_created",
    "handle_transfer_failed",
    "sync_payout_account",
    "record_bank_payout",
]
