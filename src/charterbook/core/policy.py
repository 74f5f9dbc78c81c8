"""Operating-window policy: which (duration, start hour) pairs may be booked."""

from __future__ import annotations

from ..config import PolicyConfig
from ..models import Segment, ShiftFit


def is_whole_number(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def format_hour(hour24: int) -> str:
    """6 -> '6:00 AM', 13 -> '1:00 PM', 24 -> '12:00 AM'."""
    normalized = hour24 % 24
    suffix = "PM" if normalized >= 12 else "AM"
    hour12 = 12 if normalized % 12 == 0 else normalized % 12
    return f"{hour12}:00 {suffix}"


def _window(start: int, end: int) -> str:
    return f"{start:02d}:00-{end:02d}:00"


class BookingPolicy:
    """Variable-duration trip policy over a morning / buffer / afternoon day.

    Short trips (3-4h) must not straddle the midday buffer: a 3-hour trip fits
    the morning or takes the single afternoon slot, a 4-hour trip is
    morning-only. Trips of 5h or more may start anywhere in the operating
    window as long as they end by its close.
    """

    def __init__(self, config: PolicyConfig):
        self.config = config

    def durations(self) -> range:
        return range(self.config.min_hours, self.config.max_hours + 1)

    def explain_rejection(self, duration, start_hour) -> str | None:
        """Reason why the pair is not bookable, or None when it is."""
        cfg = self.config
        if not is_whole_number(duration) or not cfg.min_hours <= duration <= cfg.max_hours:
            return (
                f"requestedHours must be an integer between {cfg.min_hours} and {cfg.max_hours}"
            )
        if not is_whole_number(start_hour):
            return "startHour must be an integer"

        end_hour = start_hour + duration
        if start_hour < cfg.operating_start or end_hour > cfg.operating_end:
            return (
                f"Trips must start at or after {format_hour(cfg.operating_start)} "
                f"and end by {format_hour(cfg.operating_end)}"
            )

        if duration == 3:
            if end_hour <= cfg.morning_end or start_hour == cfg.afternoon_start:
                return None
            return (
                f"3-hour trips must end by {format_hour(cfg.morning_end)} "
                f"or start at {format_hour(cfg.afternoon_start)}"
            )

        if duration == 4:
            if end_hour <= cfg.morning_end:
                return None
            return f"4-hour trips must end by {format_hour(cfg.morning_end)}"

        return None

    def is_start_allowed(self, duration, start_hour) -> bool:
        return self.explain_rejection(duration, start_hour) is None

    def allowed_starts(self, duration: int) -> list[int]:
        cfg = self.config
        return [
            h for h in range(cfg.operating_start, cfg.operating_end)
            if self.is_start_allowed(duration, h)
        ]

    def derive_shift_fit(self, start_hour: int, end_hour: int) -> ShiftFit:
        if end_hour <= self.config.morning_end:
            return ShiftFit.MORNING
        if start_hour >= self.config.afternoon_start:
            return ShiftFit.AFTERNOON
        return ShiftFit.FLEXIBLE

    @staticmethod
    def derive_segment(shift_fit: ShiftFit) -> Segment:
        if shift_fit == ShiftFit.MORNING:
            return Segment.AM
        if shift_fit == ShiftFit.AFTERNOON:
            return Segment.PM
        return Segment.FLEXIBLE

    def time_range_label(self, duration: int, start_hour: int | None) -> str:
        if start_hour is None:
            return "Not selected"
        return f"{format_hour(start_hour)} - {format_hour(start_hour + duration)}"

    def constraints(self) -> dict:
        """Constraint block published alongside availability."""
        cfg = self.config
        return {
            "minHours": cfg.min_hours,
            "maxHours": cfg.max_hours,
            "timeStepMinutes": cfg.time_step_minutes,
            "operatingWindow": _window(cfg.operating_start, cfg.operating_end),
            "morningWindow": _window(cfg.morning_start, cfg.morning_end),
            "bufferWindow": _window(cfg.buffer_start, cfg.buffer_end),
            "afternoonWindow": _window(cfg.afternoon_start, cfg.afternoon_end),
            "policyVersion": cfg.policy_version,
        }
