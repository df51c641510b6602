"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_pointer(dt: datetime) -> str:
    """Format ``dt`` as the minute-resolution pointer text ``YYYY-MM-DDThh:mm:00``."""

    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M") + ":00"


def parse_pointer(value: str | None) -> datetime | None:
    """Parse a stored pointer back into a UTC ``datetime`` (``None`` when unset or garbled)."""

    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


__all__ = ["utc_now", "ensure_utc", "format_pointer", "parse_pointer"]
