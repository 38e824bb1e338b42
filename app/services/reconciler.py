"""Webhook reconciliation: signed processor events in, state transitions out.

Signature failures are the only errors raised to the caller. Once an event
is verified it is recorded, dispatched and acknowledged even if it turns out
malformed, unknown or its handler fails; the outcome is kept on the
``WebhookEvent`` row instead.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import Settings, get_settings
from app.models.payment import PaymentRecord
from app.models.webhook_event import WebhookEvent, WebhookOutcome
from app.services import payouts as payout_service
from app.services.payments import apply_event, find_by_external_id, get_payment
from app.services.processor_events import (
    AccountUpdated,
    PaymentFailed,
    PaymentRequiresAction,
    PaymentSucceeded,
    PayoutCreated,
    PayoutFailed,
    ProcessorEvent,
    TransferCreated,
    TransferFailed,
    Unrecognized,
    parse_event,
)
from app.services.psp_stripe import verify_webhook_signature
from app.utils.audit import sanitize_payload_for_audit
from app.utils.errors import MalformedEvent, PaymentNotFound
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

PROVIDER = "stripe"
ACTOR = "stripe-webhook"
MAX_STALE_RETRIES = 3


def _find_payment(
    db: Session, event: PaymentSucceeded | PaymentFailed | PaymentRequiresAction
) -> PaymentRecord | None:
    payment = find_by_external_id(db, event.intent_id, for_update=True)
    if payment is not None or event.payment_id is None:
        return payment
    try:
        payment = get_payment(db, event.payment_id, for_update=True)
    except PaymentNotFound:
        return None
    if payment.external_transaction_id not in (None, event.intent_id):
        logger.warning(
            "Webhook intent does not match the payment's transaction",
            extra={"payment_id": payment.id, "event_id": event.event_id},
        )
        return None
    return payment


def _on_payment_event(
    db: Session, event: PaymentSucceeded | PaymentFailed | PaymentRequiresAction, settings: Settings
) -> WebhookOutcome:
    payment = _find_payment(db, event)
    if payment is None:
        logger.warning("Webhook for unknown payment", extra={"event_id": event.event_id, "kind": event.kind})
        return WebhookOutcome.IGNORED
    transition = apply_event(db, payment, event, actor=ACTOR, event_id=event.event_id, settings=settings)
    if not transition.applied:
        if transition.reason in ("stale", "succeeded_after_failure"):
            logger.warning(
                "Dropping stale processor event",
                extra={
                    "payment_id": payment.id,
                    "event_id": event.event_id,
                    "kind": event.kind,
                    "status": payment.status.value,
                },
            )
        return WebhookOutcome.IGNORED
    return WebhookOutcome.APPLIED


def _on_transfer_created(db: Session, event: TransferCreated, settings: Settings) -> WebhookOutcome:
    changed = payout_service.handle_transfer_created(db, event)
    return WebhookOutcome.APPLIED if changed else WebhookOutcome.IGNORED


def _on_transfer_failed(db: Session, event: TransferFailed, settings: Settings) -> WebhookOutcome:
    changed = payout_service.handle_transfer_failed(db, event, settings=settings)
    return WebhookOutcome.APPLIED if changed else WebhookOutcome.IGNORED


def _on_account_updated(db: Session, event: AccountUpdated, settings: Settings) -> WebhookOutcome:
    return WebhookOutcome.APPLIED if payout_service.sync_payout_account(db, event) else WebhookOutcome.IGNORED


def _on_bank_payout(db: Session, event: PayoutCreated | PayoutFailed, settings: Settings) -> WebhookOutcome:
    payout_service.record_bank_payout(db, event)
    return WebhookOutcome.APPLIED


def _on_unrecognized(db: Session, event: Unrecognized, settings: Settings) -> WebhookOutcome:
    logger.info("Unhandled Stripe event type", extra={"event_type": event.kind, "event_id": event.event_id})
    return WebhookOutcome.IGNORED


_HANDLERS: dict[type, Callable[[Session, Any, Settings], WebhookOutcome]] = {
    PaymentSucceeded: _on_payment_event,
    PaymentFailed: _on_payment_event,
    PaymentRequiresAction: _on_payment_event,
    TransferCreated: _on_transfer_created,
    TransferFailed: _on_transfer_failed,
    AccountUpdated: _on_account_updated,
    PayoutCreated: _on_bank_payout,
    PayoutFailed: _on_bank_payout,
    Unrecognized: _on_unrecognized,
}


def _register(db: Session, event: ProcessorEvent, raw: dict[str, Any], now: datetime) -> WebhookEvent | None:
    """Record the event once; ``None`` means it was already processed."""

    existing = db.scalars(
        select(WebhookEvent).where(WebhookEvent.provider == PROVIDER, WebhookEvent.event_id == event.event_id)
    ).first()
    if existing is not None:
        # Events whose handler failed are applied again on redelivery.
        if existing.processed_at is not None and existing.outcome != WebhookOutcome.FAILED:
            return None
        return existing

    record = WebhookEvent(
        provider=PROVIDER,
        event_id=event.event_id,
        kind=event.kind,
        object_ref=event.object_ref,
        raw_json=sanitize_payload_for_audit(raw),
        received_at=now,
    )
    try:
        db.add(record)
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event.
        db.rollback()
        return None
    return record


def _dispatch(db: Session, event: ProcessorEvent, record: WebhookEvent, settings: Settings) -> WebhookOutcome:
    handler = _HANDLERS[type(event)]
    for attempt in range(1, MAX_STALE_RETRIES + 1):
        try:
            outcome = handler(db, event, settings)
            record.outcome = outcome
            record.processed_at = utcnow()
            record.error = None
            db.commit()
            return outcome
        except StaleDataError:
            db.rollback()
            logger.info(
                "Concurrent update while applying webhook; retrying",
                extra={"event_id": event.event_id, "attempt": attempt},
            )
            record = db.merge(record)
    raise StaleDataError(f"Gave up applying {event.event_id} after {MAX_STALE_RETRIES} attempts")


def reconcile_webhook(
    db: Session,
    payload: bytes,
    sig_header: str | None,
    *,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Verify, record and apply one processor webhook delivery."""

    settings = settings or get_settings()
    text = verify_webhook_signature(
        payload,
        sig_header,
        (settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_SECRET_NEXT),
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )

    try:
        raw = json.loads(text)
        event = parse_event(raw)
    except (ValueError, MalformedEvent) as exc:
        logger.warning("Malformed Stripe webhook acknowledged", extra={"error": str(exc)})
        return {"received": True, "status": "malformed"}

    logger.info("Stripe webhook received", extra={"event_type": event.kind, "event_id": event.event_id})
    record = _register(db, event, raw, utcnow())
    if record is None:
        logger.info("Duplicate Stripe webhook ignored", extra={"event_id": event.event_id})
        return {"received": True, "status": "duplicate", "event_id": event.event_id}

    try:
        outcome = _dispatch(db, event, record, settings)
    except Exception as exc:
        db.rollback()
        logger.exception("Webhook handler failed", extra={"event_id": event.event_id, "kind": event.kind})
        record = db.merge(record)
        record.outcome = WebhookOutcome.FAILED
        record.processed_at = utcnow()
        record.error = f"{type(exc).__name__}: {exc}"[:500]
        db.commit()
        return {"received": True, "status": "failed", "event_id": event.event_id}

    return {"received": True, "status": outcome.value.lower(), "event_id": event.event_id}


__all__ = ["PROVIDER", "reconcile_webhook"]
