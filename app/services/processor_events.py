"""Typed processor (Stripe) webhook events.

Raw webhook JSON is parsed once into one of the variants below; everything
downstream dispatches on the variant class instead of poking at nested dicts.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from app.utils.errors import MalformedEvent
from app.utils.time import parse_unix_utc


@dataclass(frozen=True)
class ProcessorEvent:
    event_id: str
    kind: str
    created_at: datetime | None

    @property
    def object_ref(self) -> str | None:
        return None


@dataclass(frozen=True)
class PaymentSucceeded(ProcessorEvent):
    intent_id: str
    amount_received: int | None
    currency: str | None
    payment_id: int | None = None

    @property
    def object_ref(self) -> str | None:
        return self.intent_id


@dataclass(frozen=True)
class PaymentFailed(ProcessorEvent):
    intent_id: str
    failure_reason: str | None
    payment_id: int | None = None

    @property
    def object_ref(self) -> str | None:
        return self.intent_id


@dataclass(frozen=True)
class PaymentRequiresAction(ProcessorEvent):
    intent_id: str
    client_secret: str | None
    payment_id: int | None = None

    @property
    def object_ref(self) -> str | None:
        return self.intent_id


@dataclass(frozen=True)
class TransferCreated(ProcessorEvent):
    transfer_id: str
    amount: int | None
    destination: str | None
    payout_ids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def object_ref(self) -> str | None:
        return self.transfer_id


@dataclass(frozen=True)
class TransferFailed(ProcessorEvent):
    transfer_id: str
    failure_reason: str | None
    payout_ids: tuple[int, ...] = field(default_factory=tuple)

    @property
    def object_ref(self) -> str | None:
        return self.transfer_id


@dataclass(frozen=True)
class AccountUpdated(ProcessorEvent):
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def object_ref(self) -> str | None:
        return self.account_id


@dataclass(frozen=True)
class PayoutCreated(ProcessorEvent):
    payout_ref: str
    account_id: str | None
    amount: int | None

    @property
    def object_ref(self) -> str | None:
        return self.payout_ref


@dataclass(frozen=True)
class PayoutFailed(ProcessorEvent):
    payout_ref: str
    account_id: str | None
    failure_reason: str | None

    @property
    def object_ref(self) -> str | None:
        return self.payout_ref


@dataclass(frozen=True)
class Unrecognized(ProcessorEvent):
    pass


def _require_str(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEvent(f"Event object is missing {key!r}.")
    return value


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _payout_ids(metadata: Mapping[str, Any]) -> tuple[int, ...]:
    raw = metadata.get("payout_ids") or ""
    ids = []
    for chunk in str(raw).split(","):
        parsed = _optional_int(chunk.strip())
        if parsed is not None:
            ids.append(parsed)
    return tuple(ids)


def _failure_message(obj: Mapping[str, Any]) -> str | None:
    last_error = obj.get("last_payment_error") or {}
    if isinstance(last_error, Mapping) and last_error.get("message"):
        return str(last_error["message"])
    for key in ("failure_message", "failure_code", "cancellation_reason"):
        if obj.get(key):
            return str(obj[key])
    return None


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = obj.get("metadata") or {}
    return metadata if isinstance(metadata, Mapping) else {}


def _payment_succeeded(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return PaymentSucceeded(
        **base,
        intent_id=_require_str(obj, "id"),
        amount_received=_optional_int(obj.get("amount_received")),
        currency=(obj.get("currency") or "").upper() or None,
        payment_id=_optional_int(_metadata(obj).get("payment_id")),
    )


def _payment_failed(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return PaymentFailed(
        **base,
        intent_id=_require_str(obj, "id"),
        failure_reason=_failure_message(obj),
        payment_id=_optional_int(_metadata(obj).get("payment_id")),
    )


def _payment_requires_action(
    base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]
) -> ProcessorEvent:
    return PaymentRequiresAction(
        **base,
        intent_id=_require_str(obj, "id"),
        client_secret=obj.get("client_secret"),
        payment_id=_optional_int(_metadata(obj).get("payment_id")),
    )


def _transfer_created(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return TransferCreated(
        **base,
        transfer_id=_require_str(obj, "id"),
        amount=_optional_int(obj.get("amount")),
        destination=obj.get("destination"),
        payout_ids=_payout_ids(_metadata(obj)),
    )


def _transfer_failed(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return TransferFailed(
        **base,
        transfer_id=_require_str(obj, "id"),
        failure_reason=_failure_message(obj),
        payout_ids=_payout_ids(_metadata(obj)),
    )


def _account_updated(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return AccountUpdated(
        **base,
        account_id=_require_str(obj, "id"),
        charges_enabled=bool(obj.get("charges_enabled")),
        payouts_enabled=bool(obj.get("payouts_enabled")),
        details_submitted=bool(obj.get("details_submitted")),
    )


def _payout_created(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return PayoutCreated(
        **base,
        payout_ref=_require_str(obj, "id"),
        account_id=payload.get("account"),
        amount=_optional_int(obj.get("amount")),
    )


def _payout_failed(base: dict[str, Any], obj: Mapping[str, Any], payload: Mapping[str, Any]) -> ProcessorEvent:
    return PayoutFailed(
        **base,
        payout_ref=_require_str(obj, "id"),
        account_id=payload.get("account"),
        failure_reason=_failure_message(obj),
    )


_PARSERS: dict[str, Callable[[dict[str, Any], Mapping[str, Any], Mapping[str, Any]], ProcessorEvent]] = {
    "payment_intent.succeeded": _payment_succeeded,
    "payment_intent.payment_failed": _payment_failed,
    "payment_intent.requires_action": _payment_requires_action,
    "transfer.created": _transfer_created,
    "transfer.failed": _transfer_failed,
    "account.updated": _account_updated,
    "payout.created": _payout_created,
    "payout.failed": _payout_failed,
}

SUPPORTED_EVENT_TYPES = frozenset(_PARSERS)


def _created_at(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return parse_unix_utc(value)
    except (OverflowError, ValueError, OSError):
        # NaN, Infinity and far-out epochs from a hand-crafted payload.
        return None


def parse_event(payload: Any) -> ProcessorEvent:
    """Turn a decoded webhook body into a typed event.

    Unknown event types become :class:`Unrecognized`; structurally broken
    payloads raise :class:`MalformedEvent`.
    """

    if not isinstance(payload, Mapping):
        raise MalformedEvent("Webhook body must be a JSON object.")
    event_id = payload.get("id")
    kind = payload.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(kind, str) or not kind:
        raise MalformedEvent("Webhook event is missing its id or type.")

    base = {"event_id": event_id, "kind": kind, "created_at": _created_at(payload.get("created"))}

    parser = _PARSERS.get(kind)
    if parser is None:
        return Unrecognized(**base)

    data = payload.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise MalformedEvent("Webhook event is missing data.object.")
    return parser(base, obj, payload)


__all__ = [
    "ProcessorEvent",
    "PaymentSucceeded",
    "PaymentFailed",
    "PaymentRequiresAction",
    "TransferCreated",
    "TransferFailed",
    "AccountUpdated",
    "PayoutCreated",
    "PayoutFailed",
    "Unrecognized",
    "SUPPORTED_EVENT_TYPES",
    "parse_event",
]
