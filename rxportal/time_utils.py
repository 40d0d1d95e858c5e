"""Utilities for working with timestamps in UTC and clinic-local days."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_midnight(moment: datetime, days: int = 0, tz: Optional[tzinfo] = None) -> datetime:
    """Return midnight of ``moment``'s calendar day shifted by ``days``.

    The day is taken in ``tz`` when given, otherwise in ``moment``'s own zone.
    Naive values are treated as UTC.
    """

    aware = ensure_utc(moment) if moment.tzinfo is None else moment
    if tz is not None:
        aware = aware.astimezone(tz)
    day = aware.date() + timedelta(days=days)
    return datetime(day.year, day.month, day.day, tzinfo=aware.tzinfo)


def local_date(moment: datetime, tz: Optional[tzinfo] = None) -> date:
    """Return the calendar date of ``moment`` in ``tz`` (or its own zone)."""

    aware = ensure_utc(moment) if moment.tzinfo is None else moment
    if tz is not None:
        aware = aware.astimezone(tz)
    return aware.date()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce ``value`` into an aware UTC ``datetime`` when possible."""

    if value in (None, "", b""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="ignore")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        normalised = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            return ensure_utc(datetime.fromisoformat(normalised))
        except ValueError:
            return None
    return None


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Return ``dt`` as ISO 8601 text in UTC with a ``Z`` suffix."""

    if dt is None:
        return None
    text = ensure_utc(dt).isoformat()
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


__all__ = [
    "utc_now",
    "ensure_utc",
    "local_midnight",
    "local_date",
    "parse_datetime",
    "isoformat_utc",
]
