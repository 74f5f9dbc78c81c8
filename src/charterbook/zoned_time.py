"""Wall-clock <-> instant conversion in a named IANA time zone.

Date keys are ``YYYY-MM-DD`` and month keys ``YYYY-MM``, both interpreted in
the booking time zone. Instants are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import calendar
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MONTH_KEY_RE = re.compile(r"^\d{4}-\d{2}$")


class InvalidDateKey(ValueError):
    """Raised for a date key that is not a real YYYY-MM-DD date."""


class InvalidMonthKey(ValueError):
    """Raised for a month key that is not YYYY-MM with month 01-12."""


@dataclass(frozen=True)
class ZonedParts:
    date_key: str
    hour: int
    minute: int

    @property
    def month_key(self) -> str:
        return self.date_key[:7]


@dataclass(frozen=True)
class MonthRange:
    month_start: str
    month_end: str
    start_utc: datetime
    end_utc: datetime


def parse_date_key(value: str) -> date:
    if not isinstance(value, str) or not DATE_KEY_RE.match(value):
        raise InvalidDateKey(f"Invalid date key: {value!r} (expected YYYY-MM-DD)")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidDateKey(f"Invalid date key: {value!r} (no such date)") from None


def is_date_key(value: str) -> bool:
    try:
        parse_date_key(value)
    except InvalidDateKey:
        return False
    return True


def parse_month_key(value: str) -> tuple[int, int]:
    """Parse 'YYYY-MM' into (year, month)."""
    if not isinstance(value, str) or not MONTH_KEY_RE.match(value):
        raise InvalidMonthKey(f"Invalid month key: {value!r} (expected YYYY-MM)")
    year, month = (int(p) for p in value.split("-"))
    if not 1 <= month <= 12 or year < 1:
        raise InvalidMonthKey(f"Invalid month key: {value!r} (month out of range)")
    return year, month


def is_month_key(value: str) -> bool:
    try:
        parse_month_key(value)
    except InvalidMonthKey:
        return False
    return True


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def iter_month_days(year: int, month: int) -> Iterator[str]:
    for day in range(1, days_in_month(year, month) + 1):
        yield f"{year:04d}-{month:02d}-{day:02d}"


def parse_instant(value: str | datetime) -> datetime:
    """Parse an ISO-8601 instant. Naive values are taken as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def to_provider_iso(instant: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    utc = parse_instant(instant).astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _offset_at(instant: datetime, tz: ZoneInfo) -> timedelta:
    return instant.astimezone(tz).utcoffset() or timedelta(0)


def zoned_wall_clock_to_instant(date_key: str, hour: int, minute: int, time_zone: str) -> datetime:
    """Convert a wall-clock moment in `time_zone` to a UTC instant.

    The zone offset is first taken at the wall-clock value read as if it were
    UTC, then re-taken at the corrected instant. On days next to a DST change
    the two can differ; the second one is authoritative.
    """
    day = parse_date_key(date_key)
    tz = ZoneInfo(time_zone)
    local_as_utc = datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)

    first_offset = _offset_at(local_as_utc, tz)
    instant = local_as_utc - first_offset

    second_offset = _offset_at(instant, tz)
    if second_offset != first_offset:
        instant = local_as_utc - second_offset

    return instant


def instant_to_zoned_parts(instant: str | datetime, time_zone: str) -> ZonedParts:
    """Wall-clock date key, hour and minute of an instant in `time_zone`."""
    local = parse_instant(instant).astimezone(ZoneInfo(time_zone))
    return ZonedParts(
        date_key=f"{local.year:04d}-{local.month:02d}-{local.day:02d}",
        hour=local.hour,
        minute=local.minute,
    )


def month_utc_range(month_key: str, time_zone: str) -> MonthRange:
    """First day 00:00 to last day 23:59 of the month, in `time_zone`."""
    year, month = parse_month_key(month_key)
    month_start = f"{year:04d}-{month:02d}-01"
    month_end = f"{year:04d}-{month:02d}-{days_in_month(year, month):02d}"
    return MonthRange(
        month_start=month_start,
        month_end=month_end,
        start_utc=zoned_wall_clock_to_instant(month_start, 0, 0, time_zone),
        end_utc=zoned_wall_clock_to_instant(month_end, 23, 59, time_zone),
    )


def current_month_key(time_zone: str, now: datetime | None = None) -> str:
    parts = instant_to_zoned_parts(now or datetime.now(timezone.utc), time_zone)
    return parts.month_key
