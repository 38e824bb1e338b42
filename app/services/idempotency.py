# app/services/idempotency.py
"""Idempotency helpers."""
from typing import Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

T = TypeVar("T")


def get_existing_by_key(
    db: Session,
    model: Type[T],
    key_value: str | None,
    *,
    key_field: str = "idempotency_key",
    for_update: bool = False,
) -> Optional[T]:
    """Return the record already stored under an idempotency key, if any."""
    if not key_value:
        return None
    if not hasattr(model, key_field):
        raise AttributeError(f"{model.__name__} has no field '{key_field}'")

    column = getattr(model, key_field)
    stmt = select(model).where(column == key_value).limit(1)
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalars(stmt).first()


def payout_key(*parts: object) -> str:
    """Deterministic key for a payout derived from its source records."""
    return ":".join(str(part) for part in parts)
