"""Booking errors. Each carries the HTTP status the web layer answers with."""

from __future__ import annotations


class BookingError(Exception):
    """Base class for a rejected availability, booking or cancel request.

    `reason` is the short machine code written to the request log.
    """

    status_code = 400
    reason = "invalid_input"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class BookingValidationError(BookingError):
    """Malformed input: bad date or month key, missing attendee fields."""


class PolicyViolation(BookingError):
    """Well-formed request the operating policy does not allow."""

    reason = "policy_rejected"


class YachtNotFound(BookingError):
    status_code = 404
    reason = "not_eligible"


class YachtNotEligible(BookingError):
    """Yacht exists but cannot take policy bookings (mode, event type, go-live)."""

    status_code = 409
    reason = "invalid_yacht_mode_or_event_type"


class RateLimited(BookingError):
    status_code = 429
    reason = "rate_limited"


class BotCheckFailed(BookingError):
    reason = "turnstile_failed"


class SlotUnavailable(BookingError):
    """The slot was free when shown but is gone now. Pick another time."""

    status_code = 409
    reason = "slot_not_available"
    retry_hint = "Refresh availability and choose another start time."


class UpstreamUnavailable(BookingError):
    status_code = 502
    reason = "cal_error"


class BookingNotFound(BookingError):
    status_code = 404
    reason = "booking_not_found"
