"""Background jobs run by the APScheduler instance that holds the scheduler lease."""
from __future__ import annotations

import logging

from app.config import get_settings
from app.db import session_scope
from app.services.locks import refresh_scheduler_lock
from app.services.payments import expire_abandoned_payments
from app.services.payouts import run_payout_cycle
from app.services.psp_stripe import PaymentProcessor, StripeClient
from app.utils.errors import ProcessorNotConfigured

logger = logging.getLogger(__name__)


def _processor() -> PaymentProcessor | None:
    try:
        return StripeClient.from_env()
    except ProcessorNotConfigured as exc:
        logger.warning("Payment processor unavailable for background job", extra={"reason": exc.message})
        return None


def payout_cycle_once() -> dict[str, str]:
    """Attempt transfers for every vendor with due payouts."""

    processor = _processor()
    if processor is None:
        return {}
    with session_scope() as db:
        return run_payout_cycle(db, processor)


def expire_payments_once() -> int:
    """Fail payments left waiting for customer action past the expiry window."""

    with session_scope() as db:
        return expire_abandoned_payments(db, _processor())


def heartbeat_scheduler_lock() -> None:
    settings = get_settings()
    if not refresh_scheduler_lock(ttl_seconds=settings.SCHEDULER_LOCK_TTL_SECONDS):
        logger.error("Scheduler lease lost; another runner may take over")


__all__ = ["payout_cycle_once", "expire_payments_once", "heartbeat_scheduler_lock"]
