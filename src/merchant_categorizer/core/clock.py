"""UTC time helpers shared by the queue, rate limiter and mapping store."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes.

    Some backends (SQLite) drop tzinfo on the way back from the database even
    for ``DateTime(timezone=True)`` columns. All stored values are UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
