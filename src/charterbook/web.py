"""HTTP surface: public and internal availability/booking endpoints on FastAPI."""

from __future__ import annotations

import hmac
import logging
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import Config
from .core.engine import BookingEngine
from .errors import BookingError, SlotUnavailable
from .models import Attendee, BookingRequest, RescheduleRequest

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 100


def client_ip_from(request: Request) -> str:
    # Behind a reverse proxy the leftmost X-Forwarded-For entry is the client
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def request_id_from(request: Request) -> str:
    return getattr(request.state, "request_id", "") or str(uuid.uuid4())


def error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "requestId": request_id_from(request), **extra},
    )


class AttendeeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    email: str = ""
    phone_number: str = Field(default="", alias="phoneNumber")


class BookingBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slug: str = Field(max_length=MAX_SLUG_LENGTH)
    date: str
    requested_hours: int = Field(alias="requestedHours")
    start_hour: Optional[int] = Field(default=None, alias="startHour")
    half: Optional[str] = None
    attendee: AttendeeBody = Field(default_factory=AttendeeBody)
    notes: str = ""
    cf_token: Optional[str] = Field(default=None, alias="cfToken")
    booked_by: str = Field(default="", alias="bookedBy")

    def to_request(self) -> BookingRequest:
        return BookingRequest(
            slug=self.slug.strip(),
            date=self.date.strip(),
            requested_hours=self.requested_hours,
            start_hour=self.start_hour,
            half=self.half,
            attendee=Attendee(
                name=self.attendee.name,
                email=self.attendee.email,
                phone_number=self.attendee.phone_number,
            ),
            notes=self.notes,
            bot_token=self.cf_token,
        )


class CancelBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slug: str = Field(max_length=MAX_SLUG_LENGTH)
    booking_uid: str = Field(alias="bookingUid")
    reason: str


class RescheduleBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slug: str = Field(max_length=MAX_SLUG_LENGTH)
    booking_uid: str = Field(alias="bookingUid")
    date: str
    requested_hours: int = Field(alias="requestedHours")
    start_hour: int = Field(alias="startHour")
    reason: str = ""

    def to_request(self) -> RescheduleRequest:
        return RescheduleRequest(
            slug=self.slug.strip(),
            booking_uid=self.booking_uid.strip(),
            date=self.date.strip(),
            requested_hours=self.requested_hours,
            start_hour=self.start_hour,
            reason=self.reason,
        )


def create_app(config: Config, engine: BookingEngine) -> FastAPI:
    """Build the FastAPI app. Routes close over `config` and `engine`."""
    app = FastAPI(title="charterbook", version=__version__)
    web = config.web

    origins = web.allowed_origins or []
    if "*" in origins and web.api_key:
        logger.warning(
            "CORS allow_origins contains '*' while API key is set. "
            "This allows any website to call the internal booking API."
        )
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "x-request-id", "x-actor"],
        )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        origin = request.headers.get("origin")
        if origin and origins and "*" not in origins and origin not in origins:
            logger.info(f"Rejected request from disallowed origin {origin}")
            return error_response(request, 403, "Origin not allowed")
        return await call_next(request)

    # --- Error mapping ---

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        extra = {}
        if isinstance(exc, SlotUnavailable):
            extra["retry"] = exc.retry_hint
        return error_response(request, exc.status_code, exc.message, **extra)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
        else:
            message = "Invalid request body"
        return error_response(request, 400, message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return error_response(request, exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return error_response(request, 500, "Internal server error")

    # --- Auth helper ---

    def check_api_key(request: Request) -> None:
        if not web.api_key:
            raise HTTPException(
                status_code=403,
                detail="Internal booking API disabled. Set CHARTERBOOK_API_KEY to enable.",
            )
        auth = request.headers.get("authorization", "")
        if not auth or not hmac.compare_digest(auth.replace("Bearer ", ""), web.api_key):
            raise HTTPException(status_code=401, detail="Invalid API key")

    # --- Routes ---

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "policyVersion": config.policy.policy_version,
        }

    @app.get("/api/public/availability")
    async def public_availability(request: Request, slug: str = "", month: Optional[str] = None):
        return await engine.get_availability(
            slug.strip(), month, internal=False, request_id=request_id_from(request)
        )

    @app.post("/api/public/bookings")
    async def public_booking(body: BookingBody, request: Request):
        outcome = await engine.create_booking(
            body.to_request(),
            client_ip=client_ip_from(request),
            internal=False,
            request_id=request_id_from(request),
        )
        return outcome.to_dict()

    @app.get("/api/internal/availability")
    async def internal_availability(request: Request, slug: str = "", month: Optional[str] = None):
        check_api_key(request)
        return await engine.get_availability(
            slug.strip(), month, internal=True, request_id=request_id_from(request)
        )

    @app.post("/api/internal/bookings")
    async def internal_booking(body: BookingBody, request: Request):
        check_api_key(request)
        actor = body.booked_by or request.headers.get("x-actor", "")
        outcome = await engine.create_booking(
            body.to_request(),
            client_ip=client_ip_from(request),
            internal=True,
            actor=actor,
            request_id=request_id_from(request),
        )
        return outcome.to_dict()

    @app.post("/api/internal/bookings/cancel")
    async def internal_cancel(body: CancelBody, request: Request):
        check_api_key(request)
        return await engine.cancel_booking(
            body.slug.strip(),
            body.booking_uid.strip(),
            body.reason,
            actor=request.headers.get("x-actor", ""),
            request_id=request_id_from(request),
        )

    @app.post("/api/internal/bookings/reschedule")
    async def internal_reschedule(body: RescheduleBody, request: Request):
        check_api_key(request)
        outcome = await engine.reschedule_booking(
            body.to_request(),
            actor=request.headers.get("x-actor", ""),
            request_id=request_id_from(request),
        )
        return outcome.to_dict()

    return app


class WebServer:
    """Serves the booking API with uvicorn until stopped."""

    def __init__(self, config: Config, engine: BookingEngine):
        self.config = config
        self.engine = engine
        self.app = create_app(config, engine)
        self._server: uvicorn.Server | None = None

    async def start(self) -> None:
        web = self.config.web
        server_config = uvicorn.Config(self.app, host=web.host, port=web.port, log_level="info")
        self._server = uvicorn.Server(server_config)
        logger.info(f"Booking API starting on {web.host}:{web.port}")
        await self._server.serve()

    async def stop(self) -> None:
        if self._server:
            self._server.should_exit = True
            logger.info("Booking API stopped")
