from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite (used in tests) hands back naive datetimes for ``DateTime(timezone=True)``
    columns; every stored timestamp is UTC, so a naive value is tagged as such.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_key(value: datetime) -> str:
    """Return the ``YYYY-MM`` key for *value* in UTC."""
    return as_utc(value).strftime("%Y-%m")
