"""Cloudflare Turnstile bot verification for public booking requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .config import TurnstileConfig

logger = logging.getLogger(__name__)


@dataclass
class BotCheck:
    ok: bool
    reason: str = ""


class TurnstileVerifier:
    """Verifies a client challenge token against the siteverify endpoint.

    With no secret configured every request passes. Unlike a fail-open
    captcha, a configured verifier that cannot reach Cloudflare rejects.
    """

    def __init__(self, config: TurnstileConfig, http: httpx.AsyncClient | None = None):
        self.config = config
        self.http = http

    @property
    def enabled(self) -> bool:
        return bool(self.config.secret_key)

    async def verify(self, token: str | None, ip: str | None = None) -> BotCheck:
        if not self.enabled:
            return BotCheck(ok=True, reason="not configured")
        if not token:
            return BotCheck(ok=False, reason="Missing bot verification token")

        form = {"secret": self.config.secret_key, "response": token}
        if ip and ip != "unknown":
            form["remoteip"] = ip

        try:
            if self.http is not None:
                response = await self.http.post(self.config.verify_url, data=form)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self.config.verify_url, data=form)
        except httpx.HTTPError as e:
            logger.warning(f"Turnstile verification request failed: {e}")
            return BotCheck(ok=False, reason="Bot verification unavailable")

        if not response.is_success:
            logger.warning(f"Turnstile siteverify returned {response.status_code}")
            return BotCheck(ok=False, reason="Bot verification failed")

        try:
            result = response.json()
        except ValueError:
            return BotCheck(ok=False, reason="Bot verification failed")
        if not isinstance(result, dict):
            logger.warning(f"Turnstile siteverify returned a non-object body: {type(result).__name__}")
            return BotCheck(ok=False, reason="Bot verification failed")

        if result.get("success") is True:
            return BotCheck(ok=True)
        logger.info(f"Turnstile rejected token for IP {ip}: {result.get('error-codes', [])}")
        return BotCheck(ok=False, reason="Bot verification failed")
