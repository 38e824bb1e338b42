"""Alert service helpers."""
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.alert import Alert
from app.utils.audit import sanitize_payload_for_audit

logger = logging.getLogger(__name__)


def create_alert(
    db: Session,
    *,
    alert_type: str,
    message: str,
    payload: dict[str, Any],
    actor: str = "system",
) -> Alert:
    """Stage an alert for manual review; the caller's commit persists it."""

    alert = Alert(type=alert_type, message=message, actor=actor, payload_json=sanitize_payload_for_audit(payload))
    db.add(alert)
    db.flush()
    logger.warning("Alert created", extra={"type": alert_type, "alert_id": alert.id})
    return alert


def list_alerts(db: Session, *, alert_type: str | None = None, limit: int = 100) -> list[Alert]:
    stmt = select(Alert).order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    if alert_type:
        stmt = stmt.where(Alert.type == alert_type)
    return list(db.scalars(stmt).all())
