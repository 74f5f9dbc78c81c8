"""Resolve a requested trip to a concrete start/end hour and gate it on availability."""

from __future__ import annotations

from ..models import DayAvailability, StartResolution
from .policy import BookingPolicy, is_whole_number

LEGACY_HALVES = ("am", "pm")


def _legacy_start_hour(policy: BookingPolicy, half: str) -> int:
    # Older clients only know "am"/"pm"; map them onto the opening hour of
    # the morning and afternoon windows.
    if half == "am":
        return policy.config.morning_start
    return policy.config.afternoon_start


def resolve_start_hour_for_create(
    policy: BookingPolicy,
    duration,
    start_hour=None,
    legacy_half: str | None = None,
) -> StartResolution:
    """Turn (duration, start hour | legacy half) into a policy-checked trip."""
    cfg = policy.config
    if not is_whole_number(duration) or not cfg.min_hours <= duration <= cfg.max_hours:
        return StartResolution(
            ok=False,
            message=f"requestedHours must be an integer between {cfg.min_hours} and {cfg.max_hours}",
        )

    half = legacy_half.strip().lower() if isinstance(legacy_half, str) else None

    if start_hour is not None:
        resolved = start_hour
    elif half:
        if half not in LEGACY_HALVES:
            return StartResolution(ok=False, message="half must be 'am' or 'pm'")
        resolved = _legacy_start_hour(policy, half)
    else:
        return StartResolution(ok=False, message="startHour (or legacy half 'am'/'pm') is required")

    reason = policy.explain_rejection(duration, resolved)
    if reason:
        return StartResolution(ok=False, message=reason)

    end_hour = resolved + duration
    shift_fit = policy.derive_shift_fit(resolved, end_hour)
    return StartResolution(
        ok=True,
        start_hour=resolved,
        end_hour=end_hour,
        shift_fit=shift_fit,
        segment=policy.derive_segment(shift_fit),
    )


def is_start_selection_available(
    day: DayAvailability | None, duration: int, start_hour: int
) -> bool:
    """True iff `start_hour` is a listed valid start for `duration` on `day`."""
    if day is None:
        return False
    return start_hour in day.valid_starts(duration)
