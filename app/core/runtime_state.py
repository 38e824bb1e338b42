"""Process-wide scheduler flags read by the health endpoint."""
from __future__ import annotations

from datetime import datetime

from app.utils.time import utcnow

_scheduler_active = False
_scheduler_started_at: datetime | None = None
_scheduler_jobs: tuple[str, ...] = ()


def set_scheduler_active(active: bool, *, jobs: tuple[str, ...] = ()) -> None:
    global _scheduler_active, _scheduler_started_at, _scheduler_jobs
    _scheduler_active = active
    _scheduler_started_at = utcnow() if active else None
    _scheduler_jobs = jobs if active else ()


def is_scheduler_active() -> bool:
    return _scheduler_active


def scheduler_state() -> dict[str, object]:
    return {
        "running": _scheduler_active,
        "started_at": _scheduler_started_at.isoformat() if _scheduler_started_at else None,
        "jobs": list(_scheduler_jobs),
    }
