"""Audit logging helper utilities."""
from __future__ import annotations

import math
from typing import Any, Mapping

from sqlalchemy.orm import Session

from app.models.audit import AuditLog
from app.utils.time import utcnow

SENSITIVE_KEYS = {
    "client_secret",
    "destination_account_id",
    "account_number",
    "card_number",
    "email",
    "external_transaction_id",
    "external_transfer_id",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key == "client_secret":
        return "***"

    if key in {"account_number", "card_number"}:
        stripped = str(value).replace(" ", "")
        if len(stripped) <= 4:
            return f"***{stripped}"
        return f"***{stripped[-4:]}"

    if key == "email":
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    # Processor references: keep the object prefix (pi_, tr_, acct_) and the tail.
    text = str(value)
    if len(text) <= 8:
        return "***"
    prefix = text.split("_", 1)[0] + "_" if "_" in text else ""
    return f"{prefix}***{text[-4:]}"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious secrets and PII masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    if isinstance(data, float) and not math.isfinite(data):
        # JSON columns reject NaN and Infinity.
        return None

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> AuditLog:
    """Persist an audit entry in the shared AuditLog table."""

    entry = AuditLog(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=entity_id if entity_id is not None else 0,
        data_json=sanitize_payload_for_audit(data or {}),
        at=utcnow(),
    )
    db.add(entry)
    return entry


def log_status_change(
    db: Session,
    *,
    actor: str,
    entity: str,
    entity_id: int,
    previous: str | None,
    new: str,
    event_id: str | None = None,
    data: dict | None = None,
) -> AuditLog:
    """Record a financial status change with its triggering event."""

    payload = {"previous_status": previous, "new_status": new, "event_id": event_id}
    payload.update(data or {})
    return log_audit(
        db,
        actor=actor,
        action=f"{entity.upper()}_STATUS_CHANGED",
        entity=entity,
        entity_id=entity_id,
        data=payload,
    )


__all__ = ["SENSITIVE_KEYS", "sanitize_payload_for_audit", "log_audit", "log_status_change"]
