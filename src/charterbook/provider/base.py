"""Abstract base for scheduling providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from ..models import ProviderBooking, ProviderBookingResult


class ProviderError(Exception):
    """Non-2xx response or transport failure talking to the scheduling provider."""

    def __init__(self, message: str, status: int | None = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload


class SchedulingProvider(ABC):
    """Base class for the external scheduler that owns slots and bookings."""

    @abstractmethod
    async def get_slots(
        self,
        event_type_id: int,
        start: datetime,
        end: datetime,
        time_zone: str,
        duration_minutes: int,
    ) -> dict[str, list[datetime]]:
        """Bookable slot starts of the given length, grouped by the provider's date key."""
        ...

    @abstractmethod
    async def list_bookings(
        self, event_type_id: int, after_start: datetime, before_end: datetime
    ) -> list[ProviderBooking]:
        """All live bookings overlapping the range."""
        ...

    @abstractmethod
    async def create_booking(self, payload: dict[str, Any]) -> ProviderBookingResult:
        ...

    @abstractmethod
    async def cancel_booking(self, booking_uid: str, reason: str) -> None:
        ...

    @abstractmethod
    async def get_booking(self, booking_uid: str) -> ProviderBooking | None:
        """One booking with its span and first attendee; None when the provider has no record."""
        ...

    @abstractmethod
    async def reschedule_booking(
        self, booking_uid: str, start: datetime, reason: str = ""
    ) -> ProviderBookingResult:
        """Move a booking to a new start, keeping its length."""
        ...

    async def aclose(self) -> None:
        """Release network resources. Optional."""
        return None
