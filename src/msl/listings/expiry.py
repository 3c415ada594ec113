"""Normalization of listing expiry values.

Clients write ``endDateTime`` in several shapes: a native datetime, an ISO
8601 string, an epoch number, or a ``{"seconds": ..., "nanoseconds": ...}``
timestamp wrapper. Everything is resolved to an aware UTC datetime.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any

# Epoch values above this are treated as milliseconds
_MS_THRESHOLD = 10**11


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(value: float) -> datetime:
    if abs(value) >= _MS_THRESHOLD:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


def resolve_expiry(value: Any) -> datetime | None:
    """Resolve a stored expiry into a canonical UTC instant.

    Returns None when the value is missing or cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, datetime):
            return ensure_utc(value)
        if isinstance(value, date):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        if isinstance(value, (int, float)):
            return _from_epoch(float(value))
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            return ensure_utc(datetime.fromisoformat(text))
        if isinstance(value, dict):
            seconds = value.get("seconds", value.get("_seconds"))
            if seconds is None:
                return None
            nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
            return datetime.fromtimestamp(float(seconds) + float(nanos) / 1e9, tz=timezone.utc)

        # Timestamp-like objects exposing to_datetime()
        to_datetime = getattr(value, "to_datetime", None)
        if callable(to_datetime):
            return resolve_expiry(to_datetime())
    except (TypeError, ValueError, OverflowError, OSError):
        return None

    return None
