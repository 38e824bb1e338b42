"""Payment state machine.

``decide`` is a pure function from a payment snapshot and an event to a
:class:`Transition`: the status path to walk, the field updates to apply and
the effects the caller must execute afterwards. It performs no I/O, so the
whole lifecycle can be exercised without a database or processor.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from app.models.booking import BookingStatus
from app.models.payment import PaymentStatus
from app.services.processor_events import PaymentFailed, PaymentRequiresAction, PaymentSucceeded
from app.utils.errors import InvalidAmount, InvalidTransition, RefundExceedsRefundable

ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    # PENDING -> FAILED only when the processor rejected the create call outright.
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.REQUIRES_ACTION, PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.REQUIRES_ACTION: {PaymentStatus.PROCESSING},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
}

# Statuses after which a success/failure/requires-action event is stale.
_SETTLED = {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}
DEFAULT_RESTORE_STATUS = BookingStatus.QUOTE_SENT
EXPIRED_REASON = "requires_action_expired"


def validate_transition(current: PaymentStatus, new: PaymentStatus) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Invalid payment transition: {current.value} -> {new.value}",
            details={"current_status": current.value, "target_status": new.value},
        )


# --- Snapshot -----------------------------------------------------------
@dataclass(frozen=True)
class PaymentSnapshot:
    status: PaymentStatus
    amount: int
    external_transaction_id: str | None = None
    refunded_amount: int = 0
    released_amount: int = 0
    escrowed: bool = False
    booking_status_before: BookingStatus | None = None

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.refunded_amount - self.released_amount


# --- API-originated events -----------------------------------------------
@dataclass(frozen=True)
class ProcessorAcknowledged:
    external_transaction_id: str
    client_secret: str | None = None
    requires_action: bool = False


@dataclass(frozen=True)
class ProcessorRejected:
    reason: str


@dataclass(frozen=True)
class ResumeRequested:
    pass


@dataclass(frozen=True)
class ActionExpired:
    pass


@dataclass(frozen=True)
class RefundRequested:
    amount: int
    reason: str | None = None


PaymentEvent = Union[
    ProcessorAcknowledged,
    ProcessorRejected,
    ResumeRequested,
    ActionExpired,
    RefundRequested,
    PaymentSucceeded,
    PaymentFailed,
    PaymentRequiresAction,
]


# --- Effects --------------------------------------------------------------
@dataclass(frozen=True)
class SetBookingStatus:
    status: BookingStatus


@dataclass(frozen=True)
class CreditEscrow:
    amount: int


@dataclass(frozen=True)
class RefundEscrow:
    amount: int


@dataclass(frozen=True)
class EnqueuePayout:
    pass


@dataclass(frozen=True)
class RebalancePayouts:
    """Shrink the vendor's unpaid share after a refund of a non-escrowed payment."""


@dataclass(frozen=True)
class RaiseAlert:
    alert_type: str
    message: str


Effect = Union[SetBookingStatus, CreditEscrow, RefundEscrow, EnqueuePayout, RebalancePayouts, RaiseAlert]


@dataclass(frozen=True)
class Transition:
    previous: PaymentStatus
    path: tuple[PaymentStatus, ...] = ()
    effects: tuple[Effect, ...] = ()
    updates: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None

    @property
    def applied(self) -> bool:
        return bool(self.path)

    @property
    def target(self) -> PaymentStatus:
        return self.path[-1] if self.path else self.previous


def _ignore(snapshot: PaymentSnapshot, reason: str, *effects: Effect) -> Transition:
    return Transition(previous=snapshot.status, effects=tuple(effects), reason=reason)


def _walk(
    snapshot: PaymentSnapshot,
    path: tuple[PaymentStatus, ...],
    *,
    effects: tuple[Effect, ...] = (),
    updates: dict[str, Any] | None = None,
) -> Transition:
    current = snapshot.status
    for hop in path:
        validate_transition(current, hop)
        current = hop
    return Transition(previous=snapshot.status, path=path, effects=effects, updates=updates or {})


def _to_processing(snapshot: PaymentSnapshot) -> tuple[PaymentStatus, ...]:
    """Hops needed to (re)enter PROCESSING from a pre-settlement status."""

    if snapshot.status == PaymentStatus.PROCESSING:
        return ()
    return (PaymentStatus.PROCESSING,)


def _restore_booking(snapshot: PaymentSnapshot) -> SetBookingStatus:
    return SetBookingStatus(snapshot.booking_status_before or DEFAULT_RESTORE_STATUS)


def _external_id_update(snapshot: PaymentSnapshot, intent_id: str) -> dict[str, Any]:
    if snapshot.external_transaction_id is None:
        return {"external_transaction_id": intent_id}
    return {}


def _on_succeeded(snapshot: PaymentSnapshot, event: PaymentSucceeded) -> Transition:
    if snapshot.status in _SETTLED:
        return _ignore(snapshot, "duplicate")
    if snapshot.status == PaymentStatus.FAILED:
        return _ignore(
            snapshot,
            "succeeded_after_failure",
            RaiseAlert(
                "PAYMENT_SUCCEEDED_AFTER_FAILURE",
                "Processor reported success for a payment already marked FAILED.",
            ),
        )

    effects: list[Effect] = [SetBookingStatus(BookingStatus.CONFIRMED)]
    if snapshot.escrowed:
        effects.append(CreditEscrow(snapshot.amount))
    else:
        effects.append(EnqueuePayout())
    updates = _external_id_update(snapshot, event.intent_id)
    updates["failure_reason"] = None
    return _walk(
        snapshot,
        _to_processing(snapshot) + (PaymentStatus.COMPLETED,),
        effects=tuple(effects),
        updates=updates,
    )


def _on_failed(snapshot: PaymentSnapshot, event: PaymentFailed) -> Transition:
    if snapshot.status == PaymentStatus.FAILED:
        return _ignore(snapshot, "duplicate")
    if snapshot.status in _SETTLED:
        return _ignore(snapshot, "stale")
    updates = _external_id_update(snapshot, event.intent_id)
    updates["failure_reason"] = event.failure_reason or "Payment failed at the processor."
    return _walk(
        snapshot,
        _to_processing(snapshot) + (PaymentStatus.FAILED,),
        effects=(_restore_booking(snapshot),),
        updates=updates,
    )


def _on_requires_action(snapshot: PaymentSnapshot, event: PaymentRequiresAction) -> Transition:
    if snapshot.status == PaymentStatus.REQUIRES_ACTION:
        return _ignore(snapshot, "duplicate")
    if snapshot.status in _SETTLED or snapshot.status == PaymentStatus.FAILED:
        return _ignore(snapshot, "stale")
    updates = _external_id_update(snapshot, event.intent_id)
    if event.client_secret:
        updates["client_secret"] = event.client_secret
    return _walk(
        snapshot,
        _to_processing(snapshot) + (PaymentStatus.REQUIRES_ACTION,),
        updates=updates,
    )


def _on_acknowledged(snapshot: PaymentSnapshot, event: ProcessorAcknowledged) -> Transition:
    if snapshot.status != PaymentStatus.PENDING:
        # A webhook already moved the record forward.
        return _ignore(snapshot, "superseded")
    path: tuple[PaymentStatus, ...] = (PaymentStatus.PROCESSING,)
    if event.requires_action:
        path += (PaymentStatus.REQUIRES_ACTION,)
    updates: dict[str, Any] = {"external_transaction_id": event.external_transaction_id}
    if event.client_secret:
        updates["client_secret"] = event.client_secret
    return _walk(
        snapshot,
        path,
        effects=(SetBookingStatus(BookingStatus.PAYMENT_PENDING),),
        updates=updates,
    )


def _on_rejected(snapshot: PaymentSnapshot, event: ProcessorRejected) -> Transition:
    if snapshot.status == PaymentStatus.FAILED:
        return _ignore(snapshot, "duplicate")
    return _walk(snapshot, (PaymentStatus.FAILED,), updates={"failure_reason": event.reason})


def _on_resume(snapshot: PaymentSnapshot, event: ResumeRequested) -> Transition:
    if snapshot.status == PaymentStatus.PROCESSING:
        return _ignore(snapshot, "duplicate")
    if snapshot.status != PaymentStatus.REQUIRES_ACTION:
        raise InvalidTransition(
            "Only payments awaiting customer action can be resumed.",
            details={"current_status": snapshot.status.value},
        )
    return _walk(snapshot, (PaymentStatus.PROCESSING,))


def _on_expired(snapshot: PaymentSnapshot, event: ActionExpired) -> Transition:
    if snapshot.status != PaymentStatus.REQUIRES_ACTION:
        return _ignore(snapshot, "not_awaiting_action")
    return _walk(
        snapshot,
        (PaymentStatus.PROCESSING, PaymentStatus.FAILED),
        effects=(_restore_booking(snapshot),),
        updates={"failure_reason": EXPIRED_REASON},
    )


def _on_refund(snapshot: PaymentSnapshot, event: RefundRequested) -> Transition:
    if isinstance(event.amount, bool) or not isinstance(event.amount, int) or event.amount <= 0:
        raise InvalidAmount(details={"amount": event.amount})
    if snapshot.status not in _SETTLED:
        validate_transition(snapshot.status, PaymentStatus.REFUNDED)
    if event.amount > snapshot.refundable_amount:
        raise RefundExceedsRefundable(
            details={"requested": event.amount, "refundable": snapshot.refundable_amount}
        )

    refunded_total = snapshot.refunded_amount + event.amount
    effects: list[Effect] = []
    if snapshot.escrowed:
        effects.append(RefundEscrow(event.amount))
    else:
        effects.append(RebalancePayouts())
    if refunded_total == snapshot.amount:
        effects.append(SetBookingStatus(BookingStatus.CANCELLED))
    return _walk(
        snapshot,
        (PaymentStatus.REFUNDED,),
        effects=tuple(effects),
        updates={"refunded_amount": refunded_total},
    )


_HANDLERS = {
    PaymentSucceeded: _on_succeeded,
    PaymentFailed: _on_failed,
    PaymentRequiresAction: _on_requires_action,
    ProcessorAcknowledged: _on_acknowledged,
    ProcessorRejected: _on_rejected,
    ResumeRequested: _on_resume,
    ActionExpired: _on_expired,
    RefundRequested: _on_refund,
}


def decide(snapshot: PaymentSnapshot, event: PaymentEvent) -> Transition:
    """Return the transition ``event`` causes for a payment in ``snapshot``."""

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported payment event: {type(event).__name__}")
    return handler(snapshot, event)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DEFAULT_RESTORE_STATUS",
    "EXPIRED_REASON",
    "validate_transition",
    "PaymentSnapshot",
    "ProcessorAcknowledged",
    "ProcessorRejected",
    "ResumeRequested",
    "ActionExpired",
    "RefundRequested",
    "PaymentEvent",
    "SetBookingStatus",
    "CreditEscrow",
    "RefundEscrow",
    "EnqueuePayout",
    "RebalancePayouts",
    "RaiseAlert",
    "Effect",
    "Transition",
    "decide",
]
