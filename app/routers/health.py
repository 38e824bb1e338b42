"""Health check endpoint."""
from __future__ import annotations

import hashlib
import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter
from sqlalchemy import text

from app.config import Settings, get_settings
from app.core.runtime_state import scheduler_state
from app.db import get_engine
from app.services.commission import DEFAULT_COMMISSION_TIERS, validate_commission_tiers
from app.services.locks import SCHEDULER_LOCK_NAME, describe_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _secret_status(primary: str | None, secondary: str | None) -> str:
    if primary and secondary:
        return "rotating"
    if primary:
        return "ok"
    if secondary:
        return "partial"
    return "missing"


def _fingerprint(value: str | None) -> str | None:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config("alembic.ini"))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        if expected_head is None:
            return False, "unknown"
        if current == expected_head:
            return True, "up_to_date"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _commission_status() -> str:
    problems = validate_commission_tiers(DEFAULT_COMMISSION_TIERS)
    if problems:
        logger.error("Commission table is invalid", extra={"problems": problems})
        return "invalid"
    return "ok"


def _stripe_status(settings: Settings) -> dict[str, object]:
    return {
        "enabled": bool(settings.STRIPE_ENABLED),
        "connect_enabled": bool(settings.STRIPE_CONNECT_ENABLED),
        "api_key_configured": bool(settings.STRIPE_SECRET_KEY),
        "webhook_secret_status": _secret_status(
            settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_SECRET_NEXT
        ),
        "webhook_secret_fingerprints": {
            "primary": _fingerprint(settings.STRIPE_WEBHOOK_SECRET),
            "next": _fingerprint(settings.STRIPE_WEBHOOK_SECRET_NEXT),
        },
    }


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    commission_status = _commission_status()
    degraded = not (db_ok and migration_ok and commission_status == "ok")
    return {
        "status": "degraded" if degraded else "ok",
        "env": settings.app_env,
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "commission_table": commission_status,
        "stripe": _stripe_status(settings),
        "auto_payout_enabled": bool(settings.AUTO_PAYOUT_ENABLED),
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler": scheduler_state(),
        "scheduler_lock": describe_lock(SCHEDULER_LOCK_NAME) if db_ok else None,
    }
