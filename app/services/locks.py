"""DB-backed leases: the scheduler singleton and per-vendor payout leases."""
from __future__ import annotations

import logging
import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import db
from app.models.lock import DistributedLock
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

SCHEDULER_LOCK_NAME = "scheduler"
DEFAULT_TTL_SECONDS = 300


def vendor_lock_name(vendor_id: str) -> str:
    return f"payout-vendor:{vendor_id}"


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _locked_row(session: Session, name: str) -> DistributedLock | None:
    stmt = select(DistributedLock).where(DistributedLock.name == name).with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def try_acquire_lock(
    name: str,
    *,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    owner: str | None = None,
    db_session: Session | None = None,
) -> bool:
    """Take the named lease when it is free, expired or already ours."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        lock = _locked_row(session, name)
        if lock is None:
            session.add(DistributedLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
            session.commit()
            return True

        expires_at = as_utc(lock.expires_at)
        if expires_at is None or expires_at <= now:
            logger.info("Taking over expired lease", extra={"lock": name, "previous_owner": lock.owner})
            lock.owner = owner
            lock.acquired_at = now
            lock.expires_at = expires
            session.commit()
            return True

        if lock.owner == owner:
            lock.expires_at = expires
            session.commit()
            return True

        session.commit()
        return False
    except IntegrityError:
        # Another runner inserted the row first.
        session.rollback()
        return False
    finally:
        if should_close:
            session.close()


def refresh_lock(
    name: str,
    *,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    owner: str | None = None,
    db_session: Session | None = None,
) -> bool:
    """Extend the lease when this runner still owns it."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    try:
        lock = _locked_row(session, name)
        refreshed = lock is not None and lock.owner == owner
        if refreshed:
            lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        session.commit()
        return refreshed
    finally:
        if should_close:
            session.close()


def release_lock(name: str, *, owner: str | None = None, db_session: Session | None = None) -> None:
    """Drop the lease if held by this runner."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    try:
        lock = _locked_row(session, name)
        if lock and lock.owner == owner:
            session.delete(lock)
        session.commit()
    finally:
        if should_close:
            session.close()


def describe_lock(name: str, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the lease state."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        lock = session.execute(select(DistributedLock).where(DistributedLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        acquired_at = as_utc(lock.acquired_at)
        expires_at = as_utc(lock.expires_at)
        expires_in = (expires_at - now).total_seconds() if expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == owner else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - acquired_at).total_seconds() if acquired_at else None,
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < 0,
        }
    finally:
        if should_close:
            session.close()


def try_acquire_scheduler_lock(*, ttl_seconds: int = DEFAULT_TTL_SECONDS, db_session: Session | None = None) -> bool:
    return try_acquire_lock(SCHEDULER_LOCK_NAME, ttl_seconds=ttl_seconds, db_session=db_session)


def refresh_scheduler_lock(*, ttl_seconds: int = DEFAULT_TTL_SECONDS, db_session: Session | None = None) -> bool:
    return refresh_lock(SCHEDULER_LOCK_NAME, ttl_seconds=ttl_seconds, db_session=db_session)


def release_scheduler_lock(*, db_session: Session | None = None) -> None:
    release_lock(SCHEDULER_LOCK_NAME, db_session=db_session)


__all__ = [
    "SCHEDULER_LOCK_NAME",
    "vendor_lock_name",
    "try_acquire_lock",
    "refresh_lock",
    "release_lock",
    "describe_lock",
    "try_acquire_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
]
