"""Core data models for charterbook."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DayState(str, Enum):
    """Coarse state of a half of the day, kept for the legacy calendar view."""

    AVAILABLE = "available"
    BOOKED = "booked"
    CLOSED = "closed"


class ShiftFit(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    FLEXIBLE = "flexible"


class Segment(str, Enum):
    AM = "am"
    PM = "pm"
    FLEXIBLE = "flexible"


@dataclass
class DayAvailability:
    """Computed availability for one calendar day in the booking time zone."""

    am: DayState = DayState.CLOSED
    pm: DayState = DayState.CLOSED
    full_open: bool = False
    open_hours: list[int] = field(default_factory=list)
    valid_starts_by_duration: dict[int, list[int]] = field(default_factory=dict)

    def valid_starts(self, duration: int) -> list[int]:
        return self.valid_starts_by_duration.get(duration, [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "am": self.am.value,
            "pm": self.pm.value,
            "fullOpen": self.full_open,
            "openHours": list(self.open_hours),
            "validStartsByDuration": {
                str(d): list(starts) for d, starts in sorted(self.valid_starts_by_duration.items())
            },
        }


@dataclass
class MonthAvailability:
    month_start: str  # "2026-03-01"
    month_end: str  # "2026-03-31"
    days: dict[str, DayAvailability] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "monthStart": self.month_start,
            "monthEnd": self.month_end,
            "days": {key: day.to_dict() for key, day in self.days.items()},
        }


@dataclass
class StartResolution:
    """Outcome of resolving a requested start against the policy."""

    ok: bool
    start_hour: int | None = None
    end_hour: int | None = None
    shift_fit: ShiftFit | None = None
    segment: Segment | None = None
    message: str = ""


@dataclass
class Attendee:
    name: str = ""
    email: str = ""
    phone_number: str = ""


@dataclass
class BookingRequest:
    """A client-submitted booking attempt. Never persisted as such."""

    slug: str
    date: str  # "2026-03-14"
    requested_hours: Any
    start_hour: Any = None
    half: str | None = None
    attendee: Attendee = field(default_factory=Attendee)
    notes: str = ""
    bot_token: str | None = None


@dataclass
class BookingOutcome:
    booking_uid: str | None
    status: str
    request_id: str
    start_hour: int | None = None
    end_hour: int | None = None
    reservation_synced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "transactionId": self.booking_uid or self.request_id,
            "bookingUid": self.booking_uid,
            "status": self.status,
        }


@dataclass
class RescheduleRequest:
    """Move an existing provider booking to a new date, start hour and length."""

    slug: str
    booking_uid: str
    date: str
    requested_hours: Any
    start_hour: Any = None
    reason: str = ""


@dataclass
class RescheduleOutcome:
    booking_uid: str | None
    previous_booking_uid: str
    change_mode: str  # "native_reschedule" | "recreate_cancel"
    request_id: str
    start_hour: int | None = None
    end_hour: int | None = None
    reservation_synced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "changeMode": self.change_mode,
            "bookingUid": self.booking_uid,
            "previousBookingUid": self.previous_booking_uid,
            "status": "rescheduled",
        }


@dataclass
class ProviderBooking:
    """A booking as reported by the scheduling provider, shape-normalized."""

    uid: str
    status: str
    start: datetime
    end: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    attendee: Attendee | None = None

    @property
    def duration_minutes(self) -> int:
        return round((self.end - self.start).total_seconds() / 60)


@dataclass
class ProviderBookingResult:
    uid: str | None
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReservationDetail:
    """Local shadow of a provider booking, keyed by the provider uid."""

    booking_uid: str
    yacht_slug: str
    start_at: datetime
    end_at: datetime
    yacht_name: str = ""
    status: str = "booked"
    guest_name: str = ""
    guest_email: str = ""
    guest_phone: str = ""
    requested_hours: int = 0
    shift_fit: str = ""
    segment: str = ""
    notes: str = ""
    source: str = ""
    created_by: str = ""
    updated_by: str = ""
    booking_uid_history: list[str] = field(default_factory=list)
    id: int | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class RequestLogEntry:
    endpoint: str
    request_id: str
    status_code: int
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
