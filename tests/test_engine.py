"""End-to-end booking flow tests through the engine."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from charterbook.config import Config, RateLimitConfig, YachtConfig
from charterbook.core.engine import BookingEngine
from charterbook.core.policy import BookingPolicy
from charterbook.database import Database
from charterbook.errors import (
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
from charterbook.models import (
    Attendee,
    BookingRequest,
    ProviderBooking,
    ProviderBookingResult,
    RescheduleRequest,
)
from charterbook.provider.base import ProviderError, SchedulingProvider
from charterbook.turnstile import BotCheck
from charterbook.zoned_time import (
    instant_to_zoned_parts,
    iter_month_days,
    parse_instant,
    parse_month_key,
    zoned_wall_clock_to_instant,
)

TZ = "America/Mazatlan"
DATE = "2026-03-14"


# ── Mocks ────────────────────────────────────────────────


class MockProvider(SchedulingProvider):
    """In-memory scheduler: every policy-legal slot is offered, bookings conflict on overlap."""

    def __init__(self, policy: BookingPolicy):
        self.policy = policy
        self.bookings: list[ProviderBooking] = []
        self.created: list[dict] = []
        self.cancelled: list[tuple[str, str]] = []
        self.rescheduled: list[tuple[str, datetime, str]] = []
        self.calls: list[str] = []
        self.issued = 0
        self.create_error: ProviderError | None = None
        self.cancel_error: ProviderError | None = None
        self.slots_error: ProviderError | None = None

    async def get_slots(self, event_type_id, start, end, time_zone, duration_minutes):
        self.calls.append("slots")
        if self.slots_error:
            raise self.slots_error
        year, month = parse_month_key(instant_to_zoned_parts(end, time_zone).month_key)
        if duration_minutes == 60:
            hours = list(range(6, 18))
        else:
            hours = self.policy.allowed_starts(duration_minutes // 60)
        return {
            day: [zoned_wall_clock_to_instant(day, h, 0, time_zone) for h in hours]
            for day in iter_month_days(year, month)
        }

    async def list_bookings(self, event_type_id, after_start, before_end):
        self.calls.append("bookings")
        return [b for b in self.bookings if b.status != "cancelled"]

    async def create_booking(self, payload):
        self.calls.append("create")
        if self.create_error:
            raise self.create_error
        start = parse_instant(payload["start"])
        end = start + timedelta(minutes=payload["lengthInMinutes"])
        self._check_free(start, end)
        uid = self._next_uid()
        guest = payload["attendee"]
        self.created.append(payload)
        self.bookings.append(ProviderBooking(
            uid=uid, status="accepted", start=start, end=end,
            attendee=Attendee(
                name=guest["name"], email=guest["email"], phone_number=guest.get("phoneNumber", "")
            ),
        ))
        return ProviderBookingResult(uid=uid, status="accepted")

    async def cancel_booking(self, booking_uid, reason):
        self.calls.append("cancel")
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append((booking_uid, reason))
        for b in self.bookings:
            if b.uid == booking_uid:
                b.status = "cancelled"

    async def get_booking(self, booking_uid):
        self.calls.append("get")
        for b in self.bookings:
            if b.uid == booking_uid:
                return b
        raise ProviderError("Booking not found", 404)

    async def reschedule_booking(self, booking_uid, start, reason=""):
        self.calls.append("reschedule")
        booking = await self.get_booking(booking_uid)
        end = start + (booking.end - booking.start)
        self._check_free(start, end, ignore=booking_uid)
        self.rescheduled.append((booking_uid, start, reason))
        self.bookings.remove(booking)
        uid = self._next_uid()
        self.bookings.append(ProviderBooking(
            uid=uid, status="accepted", start=start, end=end, attendee=booking.attendee
        ))
        return ProviderBookingResult(uid=uid, status="accepted")

    def _next_uid(self) -> str:
        self.issued += 1
        return f"bk_{self.issued}"

    def _check_free(self, start, end, ignore=None):
        for b in self.bookings:
            if b.uid != ignore and b.status != "cancelled" and b.start < end and b.end > start:
                raise ProviderError("User either already has booking at this time or is not available", 409)


class MockVerifier:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.tokens = []

    async def verify(self, token, ip=None):
        self.tokens.append(token)
        return BotCheck(ok=self.ok, reason="" if self.ok else "Bot verification failed")


# ── Fixtures ─────────────────────────────────────────────


def make_config(**overrides) -> Config:
    yachts = [
        YachtConfig(slug="sea-breeze", name="Sea Breeze", booking_mode="policy_v2",
                    public_enabled=True, event_type_id=42),
        YachtConfig(slug="private-one", name="Private One", booking_mode="policy_v2",
                    public_enabled=False, event_type_id=43),
        YachtConfig(slug="old-timer", name="Old Timer", booking_mode="legacy_embed",
                    public_enabled=True, event_type_id=44),
        YachtConfig(slug="no-event", booking_mode="policy_v2", public_enabled=True),
        YachtConfig(slug="late-start", booking_mode="policy_v2", public_enabled=True,
                    event_type_id=45, live_from="2026-03-20"),
    ]
    return Config(yachts=yachts, **overrides)


@pytest.fixture
def db(tmp_path):
    d = Database(tmp_path / "test.db")
    d.connect()
    yield d
    d.close()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def provider(config):
    return MockProvider(BookingPolicy(config.policy))


@pytest.fixture
def verifier():
    return MockVerifier()


@pytest.fixture
def engine(config, provider, db, verifier):
    return BookingEngine(config, provider, db, bot_verifier=verifier)


def make_request(hours=3, start=15, half=None, slug="sea-breeze", date=DATE, email="ana@example.com", **kw):
    return BookingRequest(
        slug=slug,
        date=date,
        requested_hours=hours,
        start_hour=start,
        half=half,
        attendee=Attendee(name="Ana Lopez", email=email, phone_number=kw.pop("phone", "")),
        notes=kw.pop("notes", ""),
        bot_token=kw.pop("token", "tok"),
    )


# ── Create ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_public_booking_created_and_shadowed(engine, provider, db):
    outcome = await engine.create_booking(
        make_request(notes="Birthday", phone="+52 669 000 0000"), client_ip="203.0.113.5", request_id="req-1"
    )

    assert outcome.booking_uid == "bk_1"
    assert outcome.status == "accepted"
    assert (outcome.start_hour, outcome.end_hour) == (15, 18)
    assert outcome.reservation_synced
    assert outcome.to_dict() == {
        "requestId": "req-1", "transactionId": "bk_1", "bookingUid": "bk_1", "status": "accepted",
    }

    payload = provider.created[0]
    assert payload["start"] == "2026-03-14T22:00:00.000Z"
    assert payload["eventTypeId"] == 42
    assert payload["lengthInMinutes"] == 180
    assert payload["attendee"] == {
        "name": "Ana Lopez", "email": "ana@example.com", "timeZone": TZ, "phoneNumber": "+52 669 000 0000",
    }
    assert payload["metadata"] == {
        "policy_version": "v3",
        "yacht_slug": "sea-breeze",
        "start_hour": "15",
        "end_hour": "18",
        "requested_hours": "3",
        "shift_fit": "afternoon",
        "segment": "pm",
        "timezone": TZ,
        "source": "public_booking_v2",
        "notes": "Birthday",
    }

    reservation = db.get_reservation_by_uid("bk_1")
    assert reservation.status == "booked"
    assert reservation.start_at == datetime(2026, 3, 14, 22, tzinfo=timezone.utc)
    assert reservation.end_at == datetime(2026, 3, 15, 1, tzinfo=timezone.utc)
    assert reservation.segment == "pm"
    assert reservation.guest_phone == "+52 669 000 0000"
    assert [c["action"] for c in db.get_reservation_changes("bk_1")] == ["created"]

    log = db.get_request_logs("req-1")[0]
    assert log.endpoint == "public-booking-create"
    assert log.status_code == 200
    assert log.details["bookingUid"] == "bk_1"


@pytest.mark.asyncio
async def test_legacy_half_maps_to_start(engine, provider):
    outcome = await engine.create_booking(make_request(hours=4, start=None, half="am"))
    assert (outcome.start_hour, outcome.end_hour) == (6, 10)
    assert provider.created[0]["metadata"]["selected_half"] == "am"
    assert provider.created[0]["metadata"]["segment"] == "am"


@pytest.mark.asyncio
async def test_straddling_trip_rejected_before_any_provider_call(engine, provider, db):
    with pytest.raises(PolicyViolation) as exc_info:
        await engine.create_booking(make_request(hours=3, start=11), request_id="req-2")

    assert exc_info.value.status_code == 400
    assert "3-hour trips" in exc_info.value.message
    assert provider.calls == []
    log = db.get_request_logs("req-2")[0]
    assert log.status_code == 400
    assert log.details["reason"] == "policy_rejected"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"date": "2026-02-30"},
        {"date": "14/03/2026"},
        {"email": "not-an-email"},
        {"slug": ""},
    ],
)
async def test_field_validation(engine, provider, request_kwargs):
    with pytest.raises(BookingValidationError):
        await engine.create_booking(make_request(**request_kwargs))
    assert provider.calls == []


@pytest.mark.asyncio
async def test_second_booking_for_same_slot_is_rejected(engine, provider, db):
    await engine.create_booking(make_request(email="first@example.com"))

    with pytest.raises(SlotUnavailable) as exc_info:
        await engine.create_booking(make_request(email="second@example.com"), request_id="req-late")

    assert exc_info.value.status_code == 409
    assert len(provider.created) == 1
    assert db.get_request_logs("req-late")[0].details["reason"] == "slot_not_available"


@pytest.mark.asyncio
async def test_concurrent_creates_yield_one_booking(engine, provider):
    results = await asyncio.gather(
        engine.create_booking(make_request(email="first@example.com")),
        engine.create_booking(make_request(email="second@example.com")),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], SlotUnavailable)
    assert len(provider.created) == 1


@pytest.mark.asyncio
async def test_overlapping_longer_trip_rejected(engine):
    await engine.create_booking(make_request(hours=3, start=15))
    with pytest.raises(SlotUnavailable):
        await engine.create_booking(make_request(hours=5, start=12, email="b@example.com"))


@pytest.mark.asyncio
async def test_provider_conflict_maps_to_409(engine, provider, db):
    provider.create_error = ProviderError("Requested slot is no longer bookable", 400)
    with pytest.raises(SlotUnavailable) as exc_info:
        await engine.create_booking(make_request(), request_id="req-c")
    assert exc_info.value.reason == "cal_conflict"
    assert db.get_request_logs("req-c")[0].status_code == 409


@pytest.mark.asyncio
async def test_provider_failure_maps_to_502(engine, provider):
    provider.create_error = ProviderError("Internal error", 500)
    with pytest.raises(UpstreamUnavailable) as exc_info:
        await engine.create_booking(make_request())
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_recheck_failure_maps_to_502(engine, provider):
    provider.slots_error = ProviderError("Cal API request failed (503)", 503)
    with pytest.raises(UpstreamUnavailable):
        await engine.create_booking(make_request())
    assert "create" not in provider.calls


@pytest.mark.asyncio
async def test_rate_limit(db, provider, verifier):
    engine = BookingEngine(make_config(rate_limit=RateLimitConfig(max_requests=1)), provider, db, verifier)
    await engine.create_booking(make_request(start=6), client_ip="198.51.100.7")

    with pytest.raises(RateLimited) as exc_info:
        await engine.create_booking(make_request(start=15, email="other@example.com"), client_ip="198.51.100.7")
    assert exc_info.value.status_code == 429
    assert len(provider.created) == 1


@pytest.mark.asyncio
async def test_rate_limit_by_email(db, provider, verifier):
    engine = BookingEngine(make_config(rate_limit=RateLimitConfig(max_requests=1)), provider, db, verifier)
    await engine.create_booking(make_request(start=6), client_ip="198.51.100.7")

    with pytest.raises(RateLimited):
        await engine.create_booking(make_request(start=15, email="ANA@example.com"), client_ip="192.0.2.1")


@pytest.mark.asyncio
async def test_bot_check_failure(db, provider):
    verifier = MockVerifier(ok=False)
    engine = BookingEngine(make_config(), provider, db, bot_verifier=verifier)
    with pytest.raises(BotCheckFailed):
        await engine.create_booking(make_request(token="bad"))
    assert verifier.tokens == ["bad"]
    assert provider.calls == []


@pytest.mark.asyncio
async def test_internal_booking_skips_bot_check_and_records_actor(db, provider):
    verifier = MockVerifier(ok=False)
    engine = BookingEngine(make_config(), provider, db, bot_verifier=verifier)
    outcome = await engine.create_booking(
        make_request(slug="private-one"), internal=True, actor="staff@charters.example"
    )
    assert outcome.booking_uid == "bk_1"
    assert verifier.tokens == []
    metadata = provider.created[0]["metadata"]
    assert metadata["source"] == "internal_book_v1"
    assert metadata["booked_by"] == "staff@charters.example"
    assert db.get_reservation_by_uid("bk_1").created_by == "staff@charters.example"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "slug,error",
    [
        ("missing", YachtNotFound),
        ("private-one", YachtNotFound),
        ("old-timer", YachtNotEligible),
        ("no-event", YachtNotEligible),
    ],
)
async def test_yacht_gates(engine, provider, slug, error):
    with pytest.raises(error):
        await engine.create_booking(make_request(slug=slug))
    assert "create" not in provider.calls


@pytest.mark.asyncio
async def test_booking_before_go_live(engine, provider):
    with pytest.raises(YachtNotEligible) as exc_info:
        await engine.create_booking(make_request(slug="late-start", date="2026-03-19"))
    assert exc_info.value.message == "Booking date is before this yacht go-live date"
    assert exc_info.value.reason == "before_go_live"

    outcome = await engine.create_booking(make_request(slug="late-start", date="2026-03-20"))
    assert outcome.booking_uid


@pytest.mark.asyncio
async def test_shadow_sync_failure_keeps_provider_booking(engine, provider, db, monkeypatch):
    def broken(detail):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "upsert_reservation", broken)
    outcome = await engine.create_booking(make_request())

    assert outcome.booking_uid == "bk_1"
    assert not outcome.reservation_synced
    assert provider.calls.count("cancel") == 0


@pytest.mark.asyncio
async def test_request_log_failure_is_ignored(engine, db, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "log_request", broken)
    outcome = await engine.create_booking(make_request())
    assert outcome.booking_uid == "bk_1"


# ── Cancel ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_syncs_shadow(engine, provider, db):
    await engine.create_booking(make_request())
    result = await engine.cancel_booking(
        "sea-breeze", "bk_1", "Weather", actor="staff@charters.example", request_id="req-x"
    )

    assert result == {"requestId": "req-x", "bookingUid": "bk_1", "status": "canceled"}
    assert provider.cancelled == [("bk_1", "Weather")]
    reservation = db.get_reservation_by_uid("bk_1")
    assert reservation.status == "cancelled"
    assert reservation.updated_by == "staff@charters.example"
    changes = db.get_reservation_changes("bk_1")
    assert [c["action"] for c in changes] == ["created", "cancelled"]
    assert changes[1]["details"] == {"reason": "Weather"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProviderError("Booking not found", 404),
        ProviderError("Booking is already cancelled", 400),
        ProviderError("This booking was already canceled", 400),
    ],
)
async def test_cancel_is_idempotent(engine, provider, db, error):
    provider.cancel_error = error
    result = await engine.cancel_booking("sea-breeze", "bk_gone", "Duplicate", request_id="req-i")
    assert result["status"] == "canceled"
    assert db.get_request_logs("req-i")[0].details["note"] == "already_cancelled_idempotent"


@pytest.mark.asyncio
async def test_cancel_provider_failure(engine, provider):
    provider.cancel_error = ProviderError("Internal error", 500)
    with pytest.raises(UpstreamUnavailable):
        await engine.cancel_booking("sea-breeze", "bk_1", "Weather")


@pytest.mark.asyncio
async def test_cancel_validation(engine, provider):
    with pytest.raises(BookingValidationError):
        await engine.cancel_booking("sea-breeze", "bk_1", "  ")
    with pytest.raises(YachtNotFound):
        await engine.cancel_booking("missing", "bk_1", "Weather")
    assert provider.calls == []


# ── Reschedule ───────────────────────────────────────────


def make_move(uid="bk_1", date="2026-03-15", hours=3, start=6, slug="sea-breeze", reason=""):
    return RescheduleRequest(
        slug=slug, booking_uid=uid, date=date, requested_hours=hours, start_hour=start, reason=reason
    )


@pytest.mark.asyncio
async def test_same_length_uses_native_reschedule(engine, provider, db):
    await engine.create_booking(make_request(notes="Birthday"))
    outcome = await engine.reschedule_booking(
        make_move(reason="Weather"), actor="staff@charters.example", request_id="req-r"
    )

    assert outcome.change_mode == "native_reschedule"
    assert (outcome.booking_uid, outcome.previous_booking_uid) == ("bk_2", "bk_1")
    assert (outcome.start_hour, outcome.end_hour) == (6, 9)
    assert outcome.reservation_synced
    assert outcome.to_dict() == {
        "requestId": "req-r",
        "changeMode": "native_reschedule",
        "bookingUid": "bk_2",
        "previousBookingUid": "bk_1",
        "status": "rescheduled",
    }
    assert provider.rescheduled == [("bk_1", datetime(2026, 3, 15, 13, tzinfo=timezone.utc), "Weather")]
    assert len(provider.created) == 1
    assert provider.cancelled == []

    moved = db.get_reservation_by_uid("bk_2")
    assert moved.booking_uid_history == ["bk_1"]
    assert moved.start_at == datetime(2026, 3, 15, 13, tzinfo=timezone.utc)
    assert moved.guest_email == "ana@example.com"
    assert moved.notes == "Birthday"
    assert moved.source == "public_booking_v2"
    assert moved.updated_by == "staff@charters.example"
    assert db.get_reservation_by_uid("bk_1").status == "rescheduled"

    changes = db.get_reservation_changes("bk_2")
    assert [c["action"] for c in changes] == ["rescheduled"]
    assert changes[0]["details"]["previousBookingUid"] == "bk_1"
    assert changes[0]["details"]["changeMode"] == "native_reschedule"

    log = db.get_request_logs("req-r")[0]
    assert log.endpoint == "internal-calendar-booking-reschedule"
    assert log.status_code == 200
    assert log.details["reason"] == "reschedule_native_success"


@pytest.mark.asyncio
async def test_new_length_recreates_and_cancels_old(engine, provider, db):
    await engine.create_booking(make_request(phone="+52 669 000 0000"))
    outcome = await engine.reschedule_booking(
        make_move(hours=5, start=12, reason="Longer trip"), actor="staff@charters.example", request_id="req-l"
    )

    assert outcome.change_mode == "recreate_cancel"
    assert (outcome.booking_uid, outcome.previous_booking_uid) == ("bk_2", "bk_1")
    assert (outcome.start_hour, outcome.end_hour) == (12, 17)
    assert provider.rescheduled == []
    assert provider.cancelled == [("bk_1", "Longer trip")]

    payload = provider.created[1]
    assert payload["start"] == "2026-03-15T19:00:00.000Z"
    assert payload["lengthInMinutes"] == 300
    assert payload["attendee"] == {
        "name": "Ana Lopez", "email": "ana@example.com", "timeZone": TZ, "phoneNumber": "+52 669 000 0000",
    }
    metadata = payload["metadata"]
    assert metadata["source"] == "internal_calendar_action_v1"
    assert metadata["previous_booking_uid"] == "bk_1"
    assert metadata["reschedule_reason"] == "Longer trip"
    assert metadata["booked_by"] == "staff@charters.example"
    assert metadata["requested_hours"] == "5"

    moved = db.get_reservation_by_uid("bk_2")
    assert moved.booking_uid_history == ["bk_1"]
    assert moved.requested_hours == 5
    assert db.get_reservation_by_uid("bk_1").status == "rescheduled"
    assert db.get_request_logs("req-l")[0].details["reason"] == "reschedule_recreate_cancel_success"


@pytest.mark.asyncio
async def test_recreate_without_reason_or_shadow_row(engine, provider, db):
    provider.bookings.append(ProviderBooking(
        uid="bk_ext",
        status="accepted",
        start=zoned_wall_clock_to_instant(DATE, 6, 0, TZ),
        end=zoned_wall_clock_to_instant(DATE, 10, 0, TZ),
    ))
    outcome = await engine.reschedule_booking(make_move(uid="bk_ext"))

    assert outcome.change_mode == "recreate_cancel"
    assert provider.created[0]["attendee"]["name"] == "Guest"
    assert "selected_half" in provider.created[0]["metadata"]
    assert provider.cancelled == [("bk_ext", "Rescheduled with duration change")]
    assert db.get_reservation_by_uid(outcome.booking_uid).booking_uid_history == ["bk_ext"]


@pytest.mark.asyncio
async def test_recreate_survives_failed_cancel_of_old_booking(engine, provider):
    await engine.create_booking(make_request())
    provider.cancel_error = ProviderError("Internal error", 500)

    outcome = await engine.reschedule_booking(make_move(hours=4, start=6))

    assert outcome.booking_uid == "bk_2"
    assert outcome.change_mode == "recreate_cancel"
    assert "cancel" in provider.calls


@pytest.mark.asyncio
async def test_reschedule_into_taken_slot(engine, provider, db):
    await engine.create_booking(make_request())
    await engine.create_booking(make_request(date="2026-03-15", start=6, email="b@example.com"))
    provider.calls.clear()

    with pytest.raises(SlotUnavailable) as exc_info:
        await engine.reschedule_booking(make_move(), request_id="req-t")

    assert exc_info.value.status_code == 409
    assert "get" not in provider.calls
    assert "reschedule" not in provider.calls
    assert db.get_request_logs("req-t")[0].details["reason"] == "slot_not_available"


@pytest.mark.asyncio
async def test_reschedule_onto_own_hours_is_blocked(engine, provider):
    await engine.create_booking(make_request(start=15))
    with pytest.raises(SlotUnavailable):
        await engine.reschedule_booking(make_move(date=DATE, start=15))
    assert provider.rescheduled == []


@pytest.mark.asyncio
async def test_reschedule_provider_conflict_maps_to_409(engine, provider):
    await engine.create_booking(make_request())

    async def taken(booking_uid, start, reason=""):
        raise ProviderError("User either already has booking at this time or is not available", 409)

    provider.reschedule_booking = taken
    with pytest.raises(SlotUnavailable) as exc_info:
        await engine.reschedule_booking(make_move())
    assert exc_info.value.reason == "cal_conflict"


@pytest.mark.asyncio
async def test_reschedule_unknown_booking(engine, provider, db):
    with pytest.raises(BookingNotFound) as exc_info:
        await engine.reschedule_booking(make_move(uid="bk_missing"), request_id="req-n")
    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "Booking not found"
    assert "reschedule" not in provider.calls
    assert db.get_request_logs("req-n")[0].status_code == 404


@pytest.mark.asyncio
async def test_reschedule_policy_checked_before_provider(engine, provider):
    with pytest.raises(PolicyViolation):
        await engine.reschedule_booking(make_move(hours=3, start=11))
    with pytest.raises(YachtNotEligible):
        await engine.reschedule_booking(make_move(slug="old-timer"))
    assert provider.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "move_kwargs",
    [
        {"date": "2026-02-30"},
        {"uid": ""},
        {"slug": " "},
    ],
)
async def test_reschedule_validation(engine, provider, move_kwargs):
    with pytest.raises(BookingValidationError) as exc_info:
        await engine.reschedule_booking(make_move(**move_kwargs))
    assert exc_info.value.message == "slug, bookingUid and date (YYYY-MM-DD) are required"
    assert provider.calls == []


# ── Availability ─────────────────────────────────────────


@pytest.mark.asyncio
async def test_availability_payload(engine, db):
    payload = await engine.get_availability("sea-breeze", "2026-03", request_id="req-a")

    assert payload["yacht"]["slug"] == "sea-breeze"
    assert payload["month"] == "2026-03"
    assert payload["timezone"] == TZ
    assert payload["requestId"] == "req-a"
    assert payload["constraints"]["operatingWindow"] == "06:00-18:00"
    assert payload["monthStart"] == "2026-03-01"
    assert len(payload["days"]) == 31
    assert payload["days"][DATE]["validStartsByDuration"]["3"] == [6, 7, 8, 9, 10, 15]
    assert db.get_request_logs("req-a")[0].endpoint == "public-booking-availability"


@pytest.mark.asyncio
async def test_availability_reflects_new_booking(engine):
    await engine.create_booking(make_request(hours=3, start=15))
    payload = await engine.get_availability("sea-breeze", "2026-03")
    day = payload["days"][DATE]
    assert day["validStartsByDuration"]["3"] == [6, 7, 8, 9, 10]
    assert day["pm"] == "booked"
    assert day["fullOpen"] is False


@pytest.mark.asyncio
async def test_availability_defaults_to_current_month(engine):
    payload = await engine.get_availability("sea-breeze")
    assert len(payload["month"]) == 7


@pytest.mark.asyncio
async def test_availability_errors(engine, provider):
    with pytest.raises(BookingValidationError):
        await engine.get_availability("sea-breeze", "2026-13")
    with pytest.raises(YachtNotFound):
        await engine.get_availability("private-one", "2026-03")
    with pytest.raises(YachtNotEligible):
        await engine.get_availability("old-timer", "2026-03")
    assert provider.calls == []

    payload = await engine.get_availability("private-one", "2026-03", internal=True)
    assert payload["yacht"]["name"] == "Private One"
