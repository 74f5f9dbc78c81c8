"""Cal.com v2 API gateway."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from ..config import ProviderConfig
from ..models import Attendee, ProviderBooking, ProviderBookingResult
from ..zoned_time import parse_instant, to_provider_iso
from .base import ProviderError, SchedulingProvider

logger = logging.getLogger(__name__)

BOOKING_LIST_STATUSES = ("upcoming", "unconfirmed")


def _is_record(value: Any) -> bool:
    return isinstance(value, dict)


def _error_message(payload: Any, status: int) -> str:
    if _is_record(payload):
        error = payload.get("error")
        if _is_record(error) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return f"Cal API request failed ({status})"


def normalize_slots_payload(payload: Any) -> dict[str, list[datetime]]:
    """Flatten either slots response shape into {date_key: [instants]}.

    Current shape:  {"data": {"2026-02-11": [{"start": iso}, ...]}}
    Older shape:    {"data": {"slots": {"2026-02-11": [{"time": iso} | iso, ...]}}}
    """
    data = payload.get("data") if _is_record(payload) else None
    if not _is_record(data):
        return {}

    day_entries = {k: v for k, v in data.items() if isinstance(v, list)}
    if not day_entries:
        nested = data.get("slots")
        if not _is_record(nested):
            return {}
        day_entries = {k: v for k, v in nested.items() if isinstance(v, list)}

    result: dict[str, list[datetime]] = {}
    for day_key, slots in day_entries.items():
        instants = []
        for slot in slots:
            if isinstance(slot, str):
                iso = slot
            elif _is_record(slot):
                iso = slot.get("start") if isinstance(slot.get("start"), str) else slot.get("time")
            else:
                iso = None
            if not isinstance(iso, str):
                continue
            try:
                instants.append(parse_instant(iso))
            except ValueError:
                logger.debug("Skipping unparseable slot %r", iso)
        result[day_key] = instants
    return result


def normalize_booking(raw: dict[str, Any]) -> ProviderBooking | None:
    """Map a provider booking record to ProviderBooking; None when it has no time span."""
    start_raw = raw.get("start") or raw.get("startTime")
    end_raw = raw.get("end") or raw.get("endTime")
    if not isinstance(start_raw, str) or not isinstance(end_raw, str):
        return None
    try:
        start = parse_instant(start_raw)
        end = parse_instant(end_raw)
    except ValueError:
        return None

    uid = raw.get("uid")
    if not isinstance(uid, str) or not uid:
        uid = str(raw["id"]) if raw.get("id") is not None else ""
    status = raw.get("status") if isinstance(raw.get("status"), str) else ""
    metadata = raw.get("metadata") if _is_record(raw.get("metadata")) else {}
    return ProviderBooking(
        uid=uid,
        status=status.lower(),
        start=start,
        end=end,
        metadata=metadata,
        attendee=_first_attendee(raw.get("attendees")),
    )


def _first_attendee(attendees: Any) -> Attendee | None:
    if not isinstance(attendees, list) or not attendees or not _is_record(attendees[0]):
        return None
    first = attendees[0]

    def text(key: str) -> str:
        value = first.get(key)
        return value if isinstance(value, str) else ""

    return Attendee(
        name=text("name"),
        email=text("email"),
        phone_number=text("phoneNumber") or text("phone"),
    )


def _result_from(response: Any, fallback_uid: str | None = None) -> ProviderBookingResult:
    """Booking uid and status from a create or reschedule response."""
    data = response.get("data") if _is_record(response) else None
    data = data if _is_record(data) else {}

    uid = data.get("uid") if isinstance(data.get("uid"), str) and data.get("uid") else None
    if uid is None and isinstance(data.get("id"), int):
        uid = str(data["id"])
    status = data.get("status") if isinstance(data.get("status"), str) and data.get("status") else "accepted"
    return ProviderBookingResult(uid=uid or fallback_uid, status=status, raw=data)


class CalComProvider(SchedulingProvider):
    """Thin async wrapper around the Cal.com v2 REST API. No caching, no retries."""

    def __init__(self, config: ProviderConfig, http: httpx.AsyncClient | None = None):
        self.config = config
        self.http = http or httpx.AsyncClient(timeout=httpx.Timeout(config.timeout_seconds))

    async def aclose(self) -> None:
        await self.http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "cal-api-version": self.config.api_version,
            "Content-Type": "application/json",
        }
        # Platform credentials only when both halves are configured
        if self.config.platform_client_id and self.config.platform_secret_key:
            headers["x-cal-client-id"] = self.config.platform_client_id
            headers["x-cal-secret-key"] = self.config.platform_secret_key
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Issue one API call; raise ProviderError on transport failure or non-2xx."""
        url = f"{self.config.base_url.rstrip('/')}{path}"
        query = {
            k: (str(v).lower() if isinstance(v, bool) else str(v))
            for k, v in (params or {}).items()
            if v is not None and v != ""
        }
        logger.debug("Cal API %s %s %s", method, path, query)
        try:
            response = await self.http.request(
                method, url, params=query, json=json, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Cal API request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            message = _error_message(payload, response.status_code)
            logger.warning("Cal API %s %s -> %d: %s", method, path, response.status_code, message)
            raise ProviderError(message, status=response.status_code, payload=payload)
        return payload

    async def get_slots(
        self,
        event_type_id: int,
        start: datetime,
        end: datetime,
        time_zone: str,
        duration_minutes: int,
    ) -> dict[str, list[datetime]]:
        payload = await self.request(
            "GET",
            "/v2/slots",
            params={
                "eventTypeId": event_type_id,
                "start": to_provider_iso(start),
                "end": to_provider_iso(end),
                "timeZone": time_zone,
                "duration": duration_minutes,
            },
        )
        return normalize_slots_payload(payload)

    async def list_bookings(
        self, event_type_id: int, after_start: datetime, before_end: datetime
    ) -> list[ProviderBooking]:
        """Drain every page of upcoming + unconfirmed bookings in the range.

        Each status stops on a short page or after `bookings_max_pages` pages.
        """
        take = self.config.bookings_page_size
        seen: set[str] = set()
        bookings: list[ProviderBooking] = []

        for status in BOOKING_LIST_STATUSES:
            skip = 0
            for _page in range(self.config.bookings_max_pages):
                payload = await self.request(
                    "GET",
                    "/v2/bookings",
                    params={
                        "status": status,
                        "eventTypeId": event_type_id,
                        "afterStart": to_provider_iso(after_start),
                        "beforeEnd": to_provider_iso(before_end),
                        "take": take,
                        "skip": skip,
                        "sortStart": "asc",
                    },
                )
                page_data = payload.get("data") if _is_record(payload) else None
                if isinstance(page_data, list):
                    items = page_data
                elif _is_record(page_data) and isinstance(page_data.get("bookings"), list):
                    items = page_data["bookings"]
                else:
                    items = []

                for raw in items:
                    if not _is_record(raw):
                        continue
                    booking = normalize_booking(raw)
                    if booking is None:
                        continue
                    if booking.uid:
                        if booking.uid in seen:
                            continue
                        seen.add(booking.uid)
                    bookings.append(booking)

                if len(items) < take:
                    break
                skip += take
            else:
                logger.warning(
                    "Stopped paging %s bookings for event type %s after %d pages",
                    status, event_type_id, self.config.bookings_max_pages,
                )

        return bookings

    async def create_booking(self, payload: dict[str, Any]) -> ProviderBookingResult:
        response = await self.request("POST", "/v2/bookings", json=payload)
        return _result_from(response)

    async def cancel_booking(self, booking_uid: str, reason: str) -> None:
        await self.request(
            "POST",
            f"/v2/bookings/{booking_uid}/cancel",
            json={"cancellationReason": reason},
        )

    async def get_booking(self, booking_uid: str) -> ProviderBooking | None:
        response = await self.request("GET", f"/v2/bookings/{booking_uid}")
        data = response.get("data") if _is_record(response) else None
        if not _is_record(data):
            return None
        return normalize_booking(data)

    async def reschedule_booking(
        self, booking_uid: str, start: datetime, reason: str = ""
    ) -> ProviderBookingResult:
        body: dict[str, Any] = {"start": to_provider_iso(start)}
        if reason:
            body["reschedulingReason"] = reason
        response = await self.request("POST", f"/v2/bookings/{booking_uid}/reschedule", json=body)
        # Cal.com issues a new uid for the moved booking; keep the old one if it does not say
        return _result_from(response, fallback_uid=booking_uid)
