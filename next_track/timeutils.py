"""Time parsing and calendar arithmetic utilities."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo

from zoneinfo import ZoneInfo


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Look up an IANA timezone such as "America/Los_Angeles".

    Raises:
        ValueError: The name is unknown to the local tz database.
    """

    try:
        return ZoneInfo(tz_name)
    except (KeyError, ValueError) as exc:  # ZoneInfoNotFoundError is a KeyError
        raise ValueError(f"Invalid timezone: {tz_name!r}. Example: America/Los_Angeles") from exc


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""

    return datetime.now(UTC)


def ensure_aware(dt: datetime, tz_name: str | None = None) -> datetime:
    """Attach a timezone to a naive datetime.

    Args:
        dt: Datetime. If naive, it is interpreted in ``tz_name`` (UTC when None).
        tz_name: IANA timezone name for naive values.

    Returns:
        Timezone-aware datetime.
    """

    if dt.tzinfo is not None:
        return dt
    tz = tzinfo_from_name(tz_name) if tz_name else UTC
    return dt.replace(tzinfo=tz)


def parse_dt(text: str, tz_name: str) -> datetime:
    """Parse an ISO-like datetime ("2025-06-01 09:30:00", "2025-06-01T09:30:00Z", "...+08:00").

    Naive input is taken as local time in ``tz_name``; input with an offset
    is converted to ``tz_name``.

    Raises:
        ValueError: Unknown timezone or unparsable text.
    """

    tz = tzinfo_from_name(tz_name)
    cleaned = text.strip()
    if cleaned.endswith(("Z", "z")):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError as exc:
        raise ValueError(f"Cannot parse datetime: {text!r}. Expected e.g. 2025-06-01 09:30:00") from exc
    return parsed.replace(tzinfo=tz) if parsed.tzinfo is None else parsed.astimezone(tz)


def start_of_day(dt: datetime, tz_name: str) -> datetime:
    """Local midnight (in ``tz_name``) of the day containing ``dt``."""

    tz = tzinfo_from_name(tz_name)
    local = ensure_aware(dt).astimezone(tz)
    return datetime.combine(local.date(), time.min).replace(tzinfo=tz)


def add_days(dt: datetime, days: int) -> datetime:
    """Add calendar days keeping the wall-clock time (DST-safe for zoneinfo)."""

    return dt + timedelta(days=days)


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length.

    Example: Mar 31 minus one month is Feb 28 (or Feb 29 in leap years).
    """

    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Half-open time interval [start, end)."""

    start: datetime
    end: datetime

    def contains(self, dt: datetime) -> bool:
        return self.start <= dt < self.end

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()
