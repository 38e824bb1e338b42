"""Alerts endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.alert import AlertRead
from app.schemas.common import Envelope
from app.services.alerts import list_alerts as fetch_alerts

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("", response_model=Envelope[list[AlertRead]], status_code=status.HTTP_200_OK)
def list_alerts(
    alert_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    alerts = fetch_alerts(db, alert_type=alert_type, limit=limit)
    return Envelope(data=[AlertRead.model_validate(alert) for alert in alerts])
