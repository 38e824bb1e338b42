"""Time utilities."""
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes loaded back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_unix_utc(value: int | float) -> datetime:
    """Convert a processor epoch timestamp to an aware UTC datetime."""

    return datetime.fromtimestamp(value, tz=UTC)


__all__ = ["utcnow", "as_utc", "parse_unix_utc"]
