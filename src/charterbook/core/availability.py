"""Availability builder: combines provider slots and bookings into per-day records."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta

from ..models import DayAvailability, DayState, MonthAvailability, ProviderBooking
from ..provider.base import SchedulingProvider
from ..zoned_time import (
    instant_to_zoned_parts,
    iter_month_days,
    month_utc_range,
    parse_month_key,
    zoned_wall_clock_to_instant,
)
from .policy import BookingPolicy

logger = logging.getLogger(__name__)

BLOCKING_STATUSES = frozenset({"accepted", "pending", "unconfirmed"})
PROBE_MINUTES = 60


def is_blocking(booking: ProviderBooking) -> bool:
    return booking.status.lower() in BLOCKING_STATUSES


class AvailabilityBuilder:
    """Builds a month of DayAvailability from fresh provider data.

    Nothing is cached: every call re-queries the provider, which is what makes
    the pre-create recheck safe against a booking that landed a moment ago.
    """

    def __init__(self, policy: BookingPolicy, provider: SchedulingProvider):
        self.policy = policy
        self.provider = provider

    @property
    def time_zone(self) -> str:
        return self.policy.config.timezone

    async def build_month(
        self, event_type_id: int, month_key: str, live_from: str | None = None
    ) -> MonthAvailability:
        year, month = parse_month_key(month_key)
        month_range = month_utc_range(month_key, self.time_zone)
        durations = list(self.policy.durations())

        def slots(minutes: int):
            return self.provider.get_slots(
                event_type_id, month_range.start_utc, month_range.end_utc, self.time_zone, minutes
            )

        probe, bookings, *per_duration = await asyncio.gather(
            slots(PROBE_MINUTES),
            self.provider.list_bookings(event_type_id, month_range.start_utc, month_range.end_utc),
            *(slots(d * 60) for d in durations),
        )
        logger.debug(
            "Event type %s %s: %d bookings, %d probe days",
            event_type_id, month_key, len(bookings), len(probe),
        )

        probe_days = {day for day, _hour in self._slot_hours(probe)}
        blocked, touched_days = self._blocked_hours(bookings)

        starts_by_duration: dict[int, dict[str, set[int]]] = {}
        for duration, payload in zip(durations, per_duration):
            by_day: dict[str, set[int]] = defaultdict(set)
            for day, hour in self._slot_hours(payload):
                by_day[day].add(hour)
            starts_by_duration[duration] = by_day

        days = {}
        for date_key in iter_month_days(year, month):
            if live_from and date_key < live_from:
                days[date_key] = DayAvailability(
                    valid_starts_by_duration={d: [] for d in durations}
                )
                continue
            is_open = date_key in probe_days or date_key in touched_days
            days[date_key] = self._build_day(
                date_key, is_open, blocked.get(date_key, set()), starts_by_duration
            )

        return MonthAvailability(
            month_start=month_range.month_start,
            month_end=month_range.month_end,
            days=days,
        )

    def _slot_hours(self, slots: dict[str, list[datetime]]):
        """Yield (date_key, hour) for whole-hour slot starts in the booking zone."""
        for instants in slots.values():
            for instant in instants:
                parts = instant_to_zoned_parts(instant, self.time_zone)
                if parts.minute != 0:
                    continue
                yield parts.date_key, parts.hour

    def _blocked_hours(
        self, bookings: list[ProviderBooking]
    ) -> tuple[dict[str, set[int]], set[str]]:
        """Per-day operating-window hours occupied by live bookings.

        Every local hour a booking touches is blocked, so 08:30-10:15 blocks
        8, 9 and 10. A booking that runs past midnight blocks hours on both days.
        """
        cfg = self.policy.config
        blocked: dict[str, set[int]] = defaultdict(set)
        touched: set[str] = set()

        for booking in bookings:
            if not is_blocking(booking) or booking.end <= booking.start:
                continue
            first = instant_to_zoned_parts(booking.start, self.time_zone)
            cursor = zoned_wall_clock_to_instant(first.date_key, first.hour, 0, self.time_zone)
            while cursor < booking.end:
                parts = instant_to_zoned_parts(cursor, self.time_zone)
                touched.add(parts.date_key)
                if cfg.operating_start <= parts.hour < cfg.operating_end:
                    blocked[parts.date_key].add(parts.hour)
                cursor += timedelta(hours=1)

        return blocked, touched

    def _build_day(
        self,
        date_key: str,
        is_open: bool,
        blocked: set[int],
        starts_by_duration: dict[int, dict[str, set[int]]],
    ) -> DayAvailability:
        cfg = self.policy.config
        if is_open:
            open_hours = [
                h for h in range(cfg.operating_start, cfg.operating_end) if h not in blocked
            ]
        else:
            open_hours = []
        open_set = set(open_hours)

        valid: dict[int, list[int]] = {}
        for duration, by_day in starts_by_duration.items():
            valid[duration] = sorted(
                start
                for start in by_day.get(date_key, ())
                if self.policy.is_start_allowed(duration, start)
                and all(h in open_set for h in range(start, start + duration))
            )

        all_starts = [s for starts in valid.values() for s in starts]
        am = self._half_state(
            any(s < cfg.morning_end for s in all_starts),
            is_open and any(cfg.morning_start <= h < cfg.morning_end for h in blocked),
        )
        pm = self._half_state(
            any(s >= cfg.afternoon_start for s in all_starts),
            is_open and any(cfg.afternoon_start <= h < cfg.afternoon_end for h in blocked),
        )

        return DayAvailability(
            am=am,
            pm=pm,
            full_open=am == DayState.AVAILABLE and pm == DayState.AVAILABLE,
            open_hours=open_hours,
            valid_starts_by_duration=valid,
        )

    @staticmethod
    def _half_state(has_start: bool, has_booking: bool) -> DayState:
        if has_start:
            return DayState.AVAILABLE
        if has_booking:
            return DayState.BOOKED
        return DayState.CLOSED
