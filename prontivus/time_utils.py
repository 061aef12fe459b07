"""Utilities for working with timestamps in UTC and clinic wall-clock time.

Audit columns are stored as timezone-aware UTC values.  Scheduling columns
(appointments, blocks, cash-closing days) are naive wall-clock values in the
clinic timezone so that business hours compare directly.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from prontivus.config import get_settings

Number = Union[int, float]
Scalar = Union[Number, str]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch_seconds(value: Optional[Scalar]) -> Optional[datetime]:
    """Convert ``value`` representing epoch seconds to a UTC ``datetime``."""

    if value in (None, "", b""):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def clinic_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().clinic_timezone)


def local_now() -> datetime:
    """Return the current clinic wall-clock time as a naive ``datetime``."""

    return datetime.now(clinic_zone()).replace(tzinfo=None, microsecond=0)


def local_today() -> date:
    return local_now().date()


def to_local_naive(dt: datetime) -> datetime:
    """Convert an aware ``dt`` to clinic wall-clock time; naive values pass through."""

    if dt.tzinfo is None:
        return dt
    return dt.astimezone(clinic_zone()).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce *value* into a naive clinic ``datetime`` when possible."""

    if value in (None, "", b""):
        return None
    if isinstance(value, datetime):
        return to_local_naive(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        normalised = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            return to_local_naive(datetime.fromisoformat(normalised))
        except ValueError:
            pass
        for fmt in ("%Y-%m-%d %H:%M", "%d/%m/%Y %H:%M", "%d/%m/%Y"):
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
    return None


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` naive datetimes covering ``day``."""

    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months to ``value`` clamping the day to the target month."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_start(day: date) -> date:
    return day.replace(day=1)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if not isinstance(dt, datetime):
        return None
    return dt.replace(microsecond=0).isoformat()


__all__ = [
    "utc_now",
    "ensure_utc",
    "from_epoch_seconds",
    "clinic_zone",
    "local_now",
    "local_today",
    "to_local_naive",
    "parse_datetime",
    "day_bounds",
    "add_months",
    "month_start",
    "serialize_datetime",
]
