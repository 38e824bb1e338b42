"""Stripe SDK wrapper behind the ``PaymentProcessor`` protocol.

Services only talk to the processor through :class:`PaymentProcessor`, so
tests and alternative providers can be injected without touching the SDK.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

import stripe

from app.config import Settings, get_settings
from app.utils.errors import (
    ProcessorError,
    ProcessorNotConfigured,
    ProcessorUnavailable,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

# Stripe PaymentIntent statuses that still need the customer.
ACTION_STATUSES = {"requires_action", "requires_confirmation", "requires_payment_method"}


@dataclass(frozen=True)
class IntentResult:
    id: str
    status: str
    client_secret: str | None = None

    @property
    def requires_action(self) -> bool:
        return self.status in ACTION_STATUSES


@dataclass(frozen=True)
class TransferResult:
    id: str
    amount: int


@dataclass(frozen=True)
class RefundResult:
    id: str
    amount: int
    status: str


class PaymentProcessor(Protocol):
    def create_payment_intent(
        self, *, amount: int, currency: str, idempotency_key: str, metadata: dict[str, str]
    ) -> IntentResult: ...

    def retrieve_payment_intent(self, intent_id: str) -> IntentResult: ...

    def cancel_payment_intent(self, intent_id: str) -> IntentResult: ...

    def create_refund(self, *, intent_id: str, amount: int, idempotency_key: str) -> RefundResult: ...

    def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferResult: ...


def _translate(error: Exception, operation: str) -> Exception:
    """Map SDK errors to the payments error hierarchy."""

    log_context = {"operation": operation, "error_type": type(error).__name__}
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        logger.warning("Stripe temporarily unavailable", extra=log_context)
        return ProcessorUnavailable()
    if isinstance(error, stripe.APIError):
        logger.error("Stripe API error", extra=log_context)
        return ProcessorUnavailable()
    if isinstance(error, stripe.CardError):
        message = getattr(error, "user_message", None) or str(error)
        logger.info("Card rejected by Stripe", extra={**log_context, "code": getattr(error, "code", None)})
        return ProcessorError(message, details={"processor_code": getattr(error, "code", None)})
    if isinstance(error, stripe.StripeError):
        logger.error("Stripe rejected request", extra=log_context)
        return ProcessorError(
            getattr(error, "user_message", None) or "Payment processor rejected the request.",
            details={"processor_code": getattr(error, "code", None)},
        )
    return error


class StripeClient:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        if not settings.STRIPE_ENABLED:
            raise ProcessorNotConfigured("Stripe integration is disabled; enable STRIPE_ENABLED to proceed.")
        if not settings.STRIPE_SECRET_KEY:
            raise ProcessorNotConfigured("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = settings.STRIPE_SECRET_KEY
        # Bounded timeout on every call; mutating calls are never retried by the SDK.
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.PSP_TIMEOUT_SECONDS)
        stripe.max_network_retries = 0

    @classmethod
    def from_env(cls) -> "StripeClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    @staticmethod
    def _intent(intent: Any) -> IntentResult:
        return IntentResult(id=intent.id, status=intent.status, client_secret=intent.client_secret)

    def create_payment_intent(
        self, *, amount: int, currency: str, idempotency_key: str, metadata: dict[str, str]
    ) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "create_payment_intent") from exc
        return self._intent(intent)

    def retrieve_payment_intent(self, intent_id: str) -> IntentResult:
        """Read an intent, retrying transient failures with exponential backoff."""

        attempts = max(1, self.settings.PSP_STATUS_QUERY_RETRIES)
        for attempt in range(attempts):
            try:
                return self._intent(stripe.PaymentIntent.retrieve(intent_id))
            except stripe.StripeError as exc:
                translated = _translate(exc, "retrieve_payment_intent")
                if not isinstance(translated, ProcessorUnavailable) or attempt == attempts - 1:
                    raise translated from exc
                time.sleep(min(0.5 * (2**attempt), 5.0))
        raise ProcessorUnavailable()

    def cancel_payment_intent(self, intent_id: str) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, cancellation_reason="abandoned")
        except stripe.StripeError as exc:
            raise _translate(exc, "cancel_payment_intent") from exc
        return self._intent(intent)

    def create_refund(self, *, intent_id: str, amount: int, idempotency_key: str) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                amount=amount,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "create_refund") from exc
        return RefundResult(id=refund.id, amount=refund.amount, status=refund.status)

    def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> TransferResult:
        """Create a Transfer from the platform balance to a connected account."""

        if not self.settings.STRIPE_CONNECT_ENABLED:
            raise ProcessorNotConfigured("Stripe Connect is disabled; enable STRIPE_CONNECT_ENABLED for payouts.")
        try:
            transfer = stripe.Transfer.create(
                amount=amount,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "create_transfer") from exc
        return TransferResult(id=transfer.id, amount=transfer.amount)


def verify_webhook_signature(
    payload: bytes,
    sig_header: str | None,
    secrets: Iterable[str | None],
    *,
    tolerance: int,
) -> str:
    """Verify a ``Stripe-Signature`` header against each configured secret.

    Returns the decoded payload on success; raises ``WebhookSignatureError``.
    """

    if not sig_header:
        raise WebhookSignatureError("Stripe-Signature header is required.", details={"reason": "missing"})
    configured = [secret for secret in secrets if secret]
    if not configured:
        raise ProcessorNotConfigured("Webhook secrets are not configured.")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError(details={"reason": "encoding"}) from exc

    for secret in configured:
        try:
            stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
            return text
        except stripe.SignatureVerificationError:
            continue
    raise WebhookSignatureError(details={"reason": "mismatch"})


def get_processor() -> PaymentProcessor:
    """FastAPI dependency returning the configured processor client."""

    return StripeClient.from_env()


__all__ = [
    "ACTION_STATUSES",
    "IntentResult",
    "TransferResult",
    "RefundResult",
    "PaymentProcessor",
    "StripeClient",
    "get_processor",
    "verify_webhook_signature",
]
