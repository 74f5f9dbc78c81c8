"""Booking engine: availability queries, booking create, cancel and reschedule.

Every request rebuilds what it needs from the provider. The last step before
a provider create is always a fresh month build plus a start-hour lookup, so
a slot taken since the client loaded the calendar is rejected with 409.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from ..config import BOOKING_MODE_POLICY, Config, YachtConfig
from ..database import Database
from ..errors import (
    BookingError,
    BookingNotFound,
    BookingValidationError,
    BotCheckFailed,
    PolicyViolation,
    RateLimited,
    SlotUnavailable,
    UpstreamUnavailable,
    YachtNotEligible,
    YachtNotFound,
)
from ..models import (
    Attendee,
    BookingOutcome,
    BookingRequest,
    MonthAvailability,
    ProviderBooking,
    RescheduleOutcome,
    RescheduleRequest,
    ReservationDetail,
    StartResolution,
)
from ..provider.base import ProviderError, SchedulingProvider
from ..ratelimit import BookingRateLimiter
from ..turnstile import TurnstileVerifier
from ..zoned_time import (
    InvalidMonthKey,
    current_month_key,
    is_date_key,
    parse_month_key,
    to_provider_iso,
    zoned_wall_clock_to_instant,
)
from .availability import AvailabilityBuilder
from .policy import BookingPolicy
from .resolver import is_start_selection_available, resolve_start_hour_for_create

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PROVIDER_CONFLICT_RE = re.compile(r"not available|already booked|slot", re.IGNORECASE)
MAX_NAME_LENGTH = 200
MAX_NOTES_LENGTH = 2000

SOURCE_PUBLIC = "public_booking_v2"
SOURCE_INTERNAL = "internal_book_v1"
SOURCE_RESCHEDULE = "internal_calendar_action_v1"

CHANGE_NATIVE = "native_reschedule"
CHANGE_RECREATE = "recreate_cancel"

ENDPOINT_PUBLIC_AVAILABILITY = "public-booking-availability"
ENDPOINT_INTERNAL_AVAILABILITY = "internal-booking-availability"
ENDPOINT_PUBLIC_CREATE = "public-booking-create"
ENDPOINT_INTERNAL_CREATE = "internal-booking-create"
ENDPOINT_CANCEL = "internal-calendar-booking-cancel"
ENDPOINT_RESCHEDULE = "internal-calendar-booking-reschedule"

SLOT_TAKEN_MESSAGE = "Selected date/time is no longer available"


def new_request_id() -> str:
    return str(uuid.uuid4())


def is_provider_conflict(error: ProviderError) -> bool:
    return error.status == 409 or bool(PROVIDER_CONFLICT_RE.search(error.message or ""))


def _is_already_cancelled(error: ProviderError) -> bool:
    message = (error.message or "").lower()
    return (
        error.status == 404
        or "already cancelled" in message
        or "already canceled" in message
    )


class BookingEngine:
    """Channel-agnostic booking flow shared by the public and internal endpoints."""

    def __init__(
        self,
        config: Config,
        provider: SchedulingProvider,
        db: Database,
        bot_verifier: TurnstileVerifier | None = None,
    ):
        self.config = config
        self.provider = provider
        self.db = db
        self.policy = BookingPolicy(config.policy)
        self.builder = AvailabilityBuilder(self.policy, provider)
        self.rate_limiter = BookingRateLimiter(db, config.rate_limit)
        self.bot_verifier = bot_verifier or TurnstileVerifier(config.turnstile)

    @property
    def time_zone(self) -> str:
        return self.config.policy.timezone

    # --- Request log ---

    def _log(self, endpoint: str, request_id: str, status_code: int, details: dict[str, Any]) -> None:
        try:
            self.db.log_request(endpoint, request_id, status_code, details)
        except Exception as e:
            logger.warning(f"Failed to write booking request log ({endpoint} {request_id}): {e}")

    def _log_rejection(self, endpoint: str, request_id: str, error: BookingError, details: dict) -> None:
        self._log(
            endpoint,
            request_id,
            error.status_code,
            {"reason": error.reason, "error": error.message, **details},
        )

    # --- Yacht gates ---

    def _get_yacht(self, slug: str, internal: bool) -> YachtConfig:
        yacht = self.config.get_yacht(slug)
        if yacht is None or (not internal and not yacht.public_enabled):
            raise YachtNotFound("Yacht not found")
        if yacht.booking_mode != BOOKING_MODE_POLICY or yacht.event_type_id is None:
            raise YachtNotEligible("Yacht is not ready for booking v2")
        return yacht

    @staticmethod
    def _check_go_live(yacht: YachtConfig, date_key: str) -> None:
        if yacht.live_from and date_key < yacht.live_from:
            raise YachtNotEligible(
                "Booking date is before this yacht go-live date", reason="before_go_live"
            )

    def _booking_metadata(
        self, yacht: YachtConfig, resolution: StartResolution, duration: int, source: str
    ) -> dict[str, str]:
        # Provider metadata values must be strings
        return {
            "policy_version": self.config.policy.policy_version,
            "yacht_slug": yacht.slug,
            "start_hour": str(resolution.start_hour),
            "end_hour": str(resolution.end_hour),
            "requested_hours": str(duration),
            "shift_fit": resolution.shift_fit.value,
            "segment": resolution.segment.value,
            "timezone": self.time_zone,
            "source": source,
        }

    @staticmethod
    def _provider_failure(error: ProviderError, action: str) -> BookingError:
        """Map a provider write failure to 409 (slot taken) or 502."""
        if is_provider_conflict(error):
            return SlotUnavailable(SLOT_TAKEN_MESSAGE, reason="cal_conflict")
        logger.error(f"Provider booking {action} failed: {error}")
        return UpstreamUnavailable("Upstream booking provider error")

    async def _build_month(self, yacht: YachtConfig, month_key: str) -> MonthAvailability:
        try:
            return await self.builder.build_month(yacht.event_type_id, month_key, yacht.live_from)
        except ProviderError as e:
            logger.error(f"Availability build failed for {yacht.slug} {month_key}: {e}")
            raise UpstreamUnavailable("Upstream booking provider error") from e

    # --- Availability ---

    async def get_availability(
        self,
        slug: str,
        month: str | None = None,
        *,
        internal: bool = False,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """Month availability payload for one yacht."""
        request_id = request_id or new_request_id()
        endpoint = ENDPOINT_INTERNAL_AVAILABILITY if internal else ENDPOINT_PUBLIC_AVAILABILITY
        details = {"slug": slug, "month": month}
        try:
            payload = await self._availability(slug, month, internal)
        except BookingError as e:
            self._log_rejection(endpoint, request_id, e, details)
            raise
        details["month"] = payload["month"]
        self._log(endpoint, request_id, 200, details)
        payload["requestId"] = request_id
        return payload

    async def _availability(self, slug: str, month: str | None, internal: bool) -> dict[str, Any]:
        if not slug:
            raise BookingValidationError("slug is required")
        month_key = month or current_month_key(self.time_zone)
        try:
            parse_month_key(month_key)
        except InvalidMonthKey as e:
            raise BookingValidationError("month must be YYYY-MM") from e

        yacht = self._get_yacht(slug, internal)
        availability = await self._build_month(yacht, month_key)
        return {
            "yacht": {
                "slug": yacht.slug,
                "name": yacht.name,
                "vesselType": yacht.vessel_type,
                "capacity": yacht.capacity,
                "liveFrom": yacht.live_from,
            },
            "month": month_key,
            "timezone": self.time_zone,
            "constraints": self.policy.constraints(),
            **availability.to_dict(),
        }

    # --- Create ---

    async def create_booking(
        self,
        request: BookingRequest,
        *,
        client_ip: str = "unknown",
        internal: bool = False,
        actor: str = "",
        request_id: str | None = None,
    ) -> BookingOutcome:
        """Run one booking attempt through every gate and create it at the provider."""
        request_id = request_id or new_request_id()
        endpoint = ENDPOINT_INTERNAL_CREATE if internal else ENDPOINT_PUBLIC_CREATE
        details = {
            "slug": request.slug,
            "date": request.date,
            "requestedHours": request.requested_hours,
            "startHour": request.start_hour,
            "half": request.half,
        }
        if internal and actor:
            details["actor"] = actor
        try:
            outcome = await self._create(request, client_ip, internal, actor, request_id)
        except BookingError as e:
            logger.info(f"Booking rejected ({e.reason}) for {request.slug} {request.date}: {e.message}")
            self._log_rejection(endpoint, request_id, e, details)
            raise

        details.update(
            startHour=outcome.start_hour,
            endHour=outcome.end_hour,
            bookingUid=outcome.booking_uid,
            bookingStatus=outcome.status,
            reservationSynced=outcome.reservation_synced,
        )
        self._log(endpoint, request_id, 200, details)
        return outcome

    def _validate_fields(self, request: BookingRequest) -> None:
        if not isinstance(request.slug, str) or not request.slug.strip():
            raise BookingValidationError("slug is required")
        if not is_date_key(request.date):
            raise BookingValidationError("date must be YYYY-MM-DD")
        name = (request.attendee.name or "").strip()
        if not name:
            raise BookingValidationError("attendee name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise BookingValidationError("attendee name is too long")
        if not EMAIL_RE.match((request.attendee.email or "").strip()):
            raise BookingValidationError("attendee email is invalid")
        if len(request.notes or "") > MAX_NOTES_LENGTH:
            raise BookingValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters")

    async def _create(
        self,
        request: BookingRequest,
        client_ip: str,
        internal: bool,
        actor: str,
        request_id: str,
    ) -> BookingOutcome:
        self._validate_fields(request)
        email = request.attendee.email.strip().lower()

        resolution = resolve_start_hour_for_create(
            self.policy, request.requested_hours, request.start_hour, request.half
        )
        if not resolution.ok:
            raise PolicyViolation(resolution.message)
        duration = request.requested_hours

        yacht = self._get_yacht(request.slug, internal)
        self._check_go_live(yacht, request.date)

        if not internal:
            decision = self.rate_limiter.check(client_ip, email)
            if not decision.allowed:
                raise RateLimited("Too many booking attempts. Please try again later.")
            self.rate_limiter.record(client_ip, email, request_id)

            bot = await self.bot_verifier.verify(request.bot_token, client_ip)
            if not bot.ok:
                raise BotCheckFailed(bot.reason)

        availability = await self._build_month(yacht, request.date[:7])
        day = availability.days.get(request.date)
        if not is_start_selection_available(day, duration, resolution.start_hour):
            raise SlotUnavailable(SLOT_TAKEN_MESSAGE)

        start = zoned_wall_clock_to_instant(request.date, resolution.start_hour, 0, self.time_zone)
        attendee = {
            "name": request.attendee.name.strip(),
            "email": email,
            "timeZone": self.time_zone,
        }
        if request.attendee.phone_number:
            attendee["phoneNumber"] = request.attendee.phone_number.strip()

        metadata = self._booking_metadata(
            yacht, resolution, duration, SOURCE_INTERNAL if internal else SOURCE_PUBLIC
        )
        if request.half:
            metadata["selected_half"] = request.half.strip().lower()
        if request.notes:
            metadata["notes"] = request.notes.strip()
        if internal and actor:
            metadata["booked_by"] = actor

        try:
            result = await self.provider.create_booking({
                "start": to_provider_iso(start),
                "eventTypeId": yacht.event_type_id,
                "lengthInMinutes": duration * 60,
                "attendee": attendee,
                "metadata": metadata,
            })
        except ProviderError as e:
            raise self._provider_failure(e, f"create for {yacht.slug}") from e

        logger.info(
            f"Booked {yacht.slug} {request.date} "
            f"{self.policy.time_range_label(duration, resolution.start_hour)} uid={result.uid}"
        )

        synced = False
        if result.uid:
            synced = self._sync_created(
                ReservationDetail(
                    booking_uid=result.uid,
                    yacht_slug=yacht.slug,
                    yacht_name=yacht.name,
                    start_at=start,
                    end_at=zoned_wall_clock_to_instant(
                        request.date, resolution.end_hour, 0, self.time_zone
                    ),
                    guest_name=attendee["name"],
                    guest_email=email,
                    guest_phone=attendee.get("phoneNumber", ""),
                    requested_hours=duration,
                    shift_fit=resolution.shift_fit.value,
                    segment=resolution.segment.value,
                    notes=(request.notes or "").strip(),
                    source=metadata["source"],
                    created_by=actor or metadata["source"],
                ),
                request_id,
            )
        else:
            logger.warning(f"Provider returned no booking uid for {yacht.slug} {request.date}")

        return BookingOutcome(
            booking_uid=result.uid,
            status=result.status,
            request_id=request_id,
            start_hour=resolution.start_hour,
            end_hour=resolution.end_hour,
            reservation_synced=synced,
        )

    def _sync_created(self, detail: ReservationDetail, request_id: str) -> bool:
        """Write the local shadow row. Never undoes the provider booking."""
        try:
            self.db.upsert_reservation(detail)
            self.db.add_reservation_change(
                detail.booking_uid,
                "created",
                detail.created_by,
                {"requestId": request_id, "source": detail.source},
            )
        except Exception:
            logger.exception(f"Reservation shadow sync failed for booking {detail.booking_uid}")
            return False
        return True

    # --- Cancel ---

    async def cancel_booking(
        self,
        slug: str,
        booking_uid: str,
        reason: str,
        *,
        actor: str = "",
        request_id: str | None = None,
    ) -> dict[str, Any]:
        request_id = request_id or new_request_id()
        details = {"slug": slug, "bookingUid": booking_uid}
        try:
            note, synced = await self._cancel(slug, booking_uid, reason, actor)
        except BookingError as e:
            self._log_rejection(ENDPOINT_CANCEL, request_id, e, details)
            raise

        details.update(reason="cancel_success", cancelReason=reason, reservationSynced=synced)
        if actor:
            details["actor"] = actor
        if note:
            details["note"] = note
        self._log(ENDPOINT_CANCEL, request_id, 200, details)
        return {"requestId": request_id, "bookingUid": booking_uid, "status": "canceled"}

    async def _cancel(self, slug: str, booking_uid: str, reason: str, actor: str) -> tuple[str, bool]:
        if not slug or not booking_uid or not (reason or "").strip():
            raise BookingValidationError("slug, bookingUid and reason are required")
        if self.config.get_yacht(slug) is None:
            raise YachtNotFound("Yacht not found")

        note = ""
        try:
            await self.provider.cancel_booking(booking_uid, reason.strip())
        except ProviderError as e:
            if not _is_already_cancelled(e):
                logger.error(f"Provider cancel failed for {booking_uid}: {e}")
                raise UpstreamUnavailable(e.message or "Upstream booking provider error") from e
            note = "already_cancelled_idempotent"
            logger.info(f"Booking {booking_uid} already cancelled at provider")

        try:
            if self.db.get_reservation_by_uid(booking_uid) is None:
                return note, False
            self.db.update_reservation_status(booking_uid, "cancelled", actor)
            self.db.add_reservation_change(
                booking_uid, "cancelled", actor, {"reason": reason.strip()}
            )
        except Exception:
            logger.exception(f"Reservation shadow cancel sync failed for booking {booking_uid}")
            return note, False
        return note, True

    # --- Reschedule ---

    async def reschedule_booking(
        self,
        request: RescheduleRequest,
        *,
        actor: str = "",
        request_id: str | None = None,
    ) -> RescheduleOutcome:
        """Move a booking through the same policy and availability gates as a create.

        Same length: the provider's native reschedule. New length: a new
        booking is created and the old one cancelled.
        """
        request_id = request_id or new_request_id()
        details = {
            "slug": request.slug,
            "bookingUid": request.booking_uid,
            "date": request.date,
            "requestedHours": request.requested_hours,
            "startHour": request.start_hour,
        }
        if actor:
            details["actor"] = actor
        try:
            outcome = await self._reschedule(request, actor, request_id)
        except BookingError as e:
            logger.info(f"Reschedule rejected ({e.reason}) for {request.booking_uid}: {e.message}")
            self._log_rejection(ENDPOINT_RESCHEDULE, request_id, e, details)
            raise

        details.update(
            reason="reschedule_native_success"
            if outcome.change_mode == CHANGE_NATIVE
            else "reschedule_recreate_cancel_success",
            changeMode=outcome.change_mode,
            bookingUid=outcome.booking_uid,
            previousBookingUid=outcome.previous_booking_uid,
            endHour=outcome.end_hour,
            reservationSynced=outcome.reservation_synced,
        )
        self._log(ENDPOINT_RESCHEDULE, request_id, 200, details)
        return outcome

    async def _fetch_booking(self, booking_uid: str) -> ProviderBooking:
        try:
            booking = await self.provider.get_booking(booking_uid)
        except ProviderError as e:
            if e.status == 404:
                raise BookingNotFound("Booking not found") from e
            logger.error(f"Provider booking lookup failed for {booking_uid}: {e}")
            raise UpstreamUnavailable("Upstream booking provider error") from e
        if booking is None:
            raise BookingNotFound("Booking not found")
        return booking

    async def _reschedule(
        self, request: RescheduleRequest, actor: str, request_id: str
    ) -> RescheduleOutcome:
        slug = (request.slug or "").strip()
        previous_uid = (request.booking_uid or "").strip()
        if not slug or not previous_uid or not is_date_key(request.date):
            raise BookingValidationError("slug, bookingUid and date (YYYY-MM-DD) are required")

        resolution = resolve_start_hour_for_create(
            self.policy, request.requested_hours, request.start_hour
        )
        if not resolution.ok:
            raise PolicyViolation(resolution.message)
        duration = request.requested_hours

        yacht = self._get_yacht(slug, internal=True)
        self._check_go_live(yacht, request.date)

        availability = await self._build_month(yacht, request.date[:7])
        if not is_start_selection_available(
            availability.days.get(request.date), duration, resolution.start_hour
        ):
            raise SlotUnavailable(SLOT_TAKEN_MESSAGE)

        existing = await self._fetch_booking(previous_uid)
        start = zoned_wall_clock_to_instant(request.date, resolution.start_hour, 0, self.time_zone)
        reason = (request.reason or "").strip()

        if existing.duration_minutes == duration * 60:
            change_mode = CHANGE_NATIVE
            try:
                result = await self.provider.reschedule_booking(previous_uid, start, reason)
            except ProviderError as e:
                raise self._provider_failure(e, f"reschedule of {previous_uid}") from e
        else:
            change_mode = CHANGE_RECREATE
            guest = existing.attendee or Attendee()
            attendee = {
                "name": guest.name or "Guest",
                "email": guest.email,
                "timeZone": self.time_zone,
            }
            if guest.phone_number:
                attendee["phoneNumber"] = guest.phone_number

            metadata = self._booking_metadata(yacht, resolution, duration, SOURCE_RESCHEDULE)
            if resolution.segment.value in ("am", "pm"):
                metadata["selected_half"] = resolution.segment.value
            metadata["previous_booking_uid"] = previous_uid
            if reason:
                metadata["reschedule_reason"] = reason
            if actor:
                metadata["booked_by"] = actor

            try:
                result = await self.provider.create_booking({
                    "start": to_provider_iso(start),
                    "eventTypeId": yacht.event_type_id,
                    "lengthInMinutes": duration * 60,
                    "attendee": attendee,
                    "metadata": metadata,
                })
            except ProviderError as e:
                raise self._provider_failure(e, f"re-create of {previous_uid}") from e

            # The new booking stands even if the old one cannot be cancelled
            try:
                await self.provider.cancel_booking(
                    previous_uid, reason or "Rescheduled with duration change"
                )
            except ProviderError as e:
                logger.error(
                    f"Failed to cancel {previous_uid} after re-creating it as {result.uid}: {e}"
                )

        logger.info(
            f"Rescheduled {previous_uid} -> {result.uid} ({change_mode}) {yacht.slug} {request.date} "
            f"{self.policy.time_range_label(duration, resolution.start_hour)}"
        )

        synced = False
        if result.uid:
            synced = self._sync_rescheduled(
                previous_uid,
                ReservationDetail(
                    booking_uid=result.uid,
                    yacht_slug=yacht.slug,
                    yacht_name=yacht.name,
                    start_at=start,
                    end_at=zoned_wall_clock_to_instant(
                        request.date, resolution.end_hour, 0, self.time_zone
                    ),
                    guest_name=existing.attendee.name if existing.attendee else "",
                    guest_email=existing.attendee.email if existing.attendee else "",
                    guest_phone=existing.attendee.phone_number if existing.attendee else "",
                    requested_hours=duration,
                    shift_fit=resolution.shift_fit.value,
                    segment=resolution.segment.value,
                    source=SOURCE_RESCHEDULE,
                    created_by=actor or SOURCE_RESCHEDULE,
                    updated_by=actor,
                ),
                {"changeMode": change_mode, "reason": reason, "requestId": request_id},
            )
        else:
            logger.warning(f"Provider returned no booking uid rescheduling {previous_uid}")

        return RescheduleOutcome(
            booking_uid=result.uid,
            previous_booking_uid=previous_uid,
            change_mode=change_mode,
            request_id=request_id,
            start_hour=resolution.start_hour,
            end_hour=resolution.end_hour,
            reservation_synced=synced,
        )

    def _sync_rescheduled(
        self, previous_uid: str, detail: ReservationDetail, change: dict[str, Any]
    ) -> bool:
        """Carry the shadow row over to the new uid and record where it came from."""
        try:
            previous = self.db.get_reservation_by_uid(previous_uid)
            if previous is not None:
                detail.guest_name = detail.guest_name or previous.guest_name
                detail.guest_email = detail.guest_email or previous.guest_email
                detail.guest_phone = detail.guest_phone or previous.guest_phone
                detail.notes = previous.notes
                detail.source = previous.source or detail.source
                detail.created_by = previous.created_by or detail.created_by
                detail.booking_uid_history = list(previous.booking_uid_history)
            if detail.booking_uid != previous_uid and previous_uid not in detail.booking_uid_history:
                detail.booking_uid_history.append(previous_uid)

            self.db.upsert_reservation(detail)
            if previous is not None and detail.booking_uid != previous_uid:
                self.db.update_reservation_status(previous_uid, "rescheduled", detail.updated_by)
            self.db.add_reservation_change(
                detail.booking_uid,
                "rescheduled",
                detail.updated_by,
                {"previousBookingUid": previous_uid, **change},
            )
        except Exception:
            logger.exception(f"Reservation shadow sync failed rescheduling {previous_uid}")
            return False
        return True
