"""Standardized error payloads and the payments domain exception hierarchy."""
from __future__ import annotations

from typing import Any

from app.utils.time import utcnow

MANUAL_REVIEW_MESSAGE = "This operation is pending manual review."


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {
        "success": False,
        "error": {"code": code, "message": message, "timestamp": utcnow().isoformat()},
    }
    if details:
        payload["error"]["details"] = details
    return payload


class PaymentsError(Exception):
    """Base class for errors raised by the payments domain.

    ``code`` is the machine-readable identifier returned to API callers and
    ``status_code`` the HTTP status the API layer maps the error to.
    """

    code = "PAYMENTS_ERROR"
    status_code = 400
    default_message = "Payment operation failed."

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


# --- Validation ----------------------------------------------------------
class ValidationError(PaymentsError):
    code = "VALIDATION_ERROR"
    status_code = 422


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"
    default_message = "Amount must be a positive integer in minor units."


class UnsupportedCurrency(ValidationError):
    code = "UNSUPPORTED_CURRENCY"
    default_message = "Currency is not supported."


class IdempotencyKeyRequired(ValidationError):
    code = "IDEMPOTENCY_KEY_REQUIRED"
    status_code = 400
    default_message = "Idempotency-Key header is required."


class NotFound(PaymentsError):
    code = "NOT_FOUND"
    status_code = 404


class BookingNotFound(NotFound):
    code = "BOOKING_NOT_FOUND"
    default_message = "Booking not found."


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found."


class EscrowNotFound(NotFound):
    code = "ESCROW_NOT_FOUND"
    default_message = "Escrow account not found."


class MilestoneNotFound(NotFound):
    code = "MILESTONE_NOT_FOUND"
    default_message = "Milestone not found."


class PayoutNotFound(NotFound):
    code = "PAYOUT_NOT_FOUND"
    default_message = "Payout not found."


# --- State conflicts -----------------------------------------------------
class StateConflict(PaymentsError):
    code = "STATE_CONFLICT"
    status_code = 409


class DuplicateEscrow(StateConflict):
    code = "DUPLICATE_ESCROW"
    default_message = "An escrow account already exists for this booking."


class MilestoneNotCompleted(StateConflict):
    code = "MILESTONE_NOT_COMPLETED"
    default_message = "Milestone must be completed before its funds are released."


class MilestoneAlreadyReleased(StateConflict):
    code = "MILESTONE_ALREADY_RELEASED"
    default_message = "Milestone funds were already released."


class InsufficientHeldFunds(StateConflict):
    code = "INSUFFICIENT_HELD_FUNDS"
    default_message = MANUAL_REVIEW_MESSAGE


class RefundExceedsHeld(StateConflict):
    code = "REFUND_EXCEEDS_HELD"
    default_message = MANUAL_REVIEW_MESSAGE


class RefundExceedsRefundable(StateConflict):
    code = "REFUND_EXCEEDS_REFUNDABLE"
    default_message = "Refund exceeds the refundable amount of this payment."


class InvalidTransition(StateConflict):
    code = "INVALID_TRANSITION"
    default_message = "Operation is not allowed in the current payment status."


class PaymentExpired(StateConflict):
    code = "PAYMENT_EXPIRED"
    default_message = "Payment authentication window has expired."


class PayoutNotRequestable(StateConflict):
    code = "PAYOUT_NOT_REQUESTABLE"
    default_message = MANUAL_REVIEW_MESSAGE


# --- Processor -----------------------------------------------------------
class ProcessorError(PaymentsError):
    """The processor rejected the request."""

    code = "PROCESSOR_ERROR"
    status_code = 502
    default_message = "Payment processor rejected the request."


class ProcessorUnavailable(ProcessorError):
    """Timeout or connectivity failure; the caller may retry."""

    code = "PROCESSOR_UNAVAILABLE"
    status_code = 503
    default_message = "Payment processor is temporarily unavailable; retry later."


class ProcessorNotConfigured(PaymentsError):
    code = "PROCESSOR_NOT_CONFIGURED"
    status_code = 503
    default_message = "Payment processor integration is not configured."


class WebhookSignatureError(PaymentsError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 400
    default_message = "Invalid webhook signature."


class MalformedEvent(PaymentsError):
    code = "WEBHOOK_EVENT_MALFORMED"
    status_code = 400
    default_message = "Webhook payload could not be parsed."


# --- Configuration -------------------------------------------------------
class ConfigurationError(PaymentsError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
    default_message = "Payments configuration is invalid."


__all__ = [
    "MANUAL_REVIEW_MESSAGE",
    "error_response",
    "PaymentsError",
    "ValidationError",
    "InvalidAmount",
    "UnsupportedCurrency",
    "IdempotencyKeyRequired",
    "NotFound",
    "BookingNotFound",
    "PaymentNotFound",
    "EscrowNotFound",
    "MilestoneNotFound",
    "PayoutNotFound",
    "StateConflict",
    "DuplicateEscrow",
    "MilestoneNotCompleted",
    "MilestoneAlreadyReleased",
    "InsufficientHeldFunds",
    "RefundExceedsHeld",
    "RefundExceedsRefundable",
    "InvalidTransition",
    "PaymentExpired",
    "PayoutNotRequestable",
    "ProcessorError",
    "ProcessorUnavailable",
    "ProcessorNotConfigured",
    "WebhookSignatureError",
    "MalformedEvent",
    "ConfigurationError",
]
