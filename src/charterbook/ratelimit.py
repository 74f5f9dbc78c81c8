"""Rolling-window booking rate limit keyed on hashed client IP and email."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .config import RateLimitConfig
from .database import Database

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    ip_hits: int = 0
    email_hits: int = 0


class BookingRateLimiter:
    """Counts booking attempts per hashed IP and hashed email.

    Raw IPs and emails are never stored. The count and the insert are two
    separate statements, so concurrent attempts can slightly overshoot the
    limit.
    """

    def __init__(self, db: Database, config: RateLimitConfig):
        self.db = db
        self.config = config

    def _hash(self, kind: str, value: str) -> str:
        return hashlib.sha256(f"{self.config.salt}:{kind}:{value}".encode()).hexdigest()

    def hash_ip(self, ip: str) -> str:
        return self._hash("ip", ip)

    def hash_email(self, email: str) -> str:
        return self._hash("email", email.strip().lower())

    def check(self, ip: str, email: str, now: datetime | None = None) -> RateLimitDecision:
        since = (now or datetime.now(timezone.utc)) - timedelta(minutes=self.config.window_minutes)
        ip_hits = self.db.count_rate_limit_hits(self.hash_ip(ip), since)
        email_hits = self.db.count_rate_limit_hits(self.hash_email(email), since)
        limit = self.config.max_requests
        allowed = ip_hits < limit and email_hits < limit
        if not allowed:
            logger.info(f"Booking rate limit hit (ip={ip_hits}, email={email_hits}, limit={limit})")
        return RateLimitDecision(allowed=allowed, ip_hits=ip_hits, email_hits=email_hits)

    def record(self, ip: str, email: str, request_id: str = "", now: datetime | None = None) -> None:
        self.db.record_rate_limit_hit(self.hash_ip(ip), "ip", request_id, at=now)
        self.db.record_rate_limit_hit(self.hash_email(email), "email", request_id, at=now)
