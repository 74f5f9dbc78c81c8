"""Configuration loading from YAML + environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

import yaml
from dotenv import load_dotenv

BOOKING_MODE_POLICY = "policy_v2"
BOOKING_MODE_LEGACY = "legacy_embed"


@dataclass
class PolicyConfig:
    """Operating calendar window. Hours are local to `timezone`, [start, end)."""

    timezone: str = "America/Mazatlan"
    min_hours: int = 3
    max_hours: int = 8
    operating_start: int = 6
    operating_end: int = 18
    morning_end: int = 13
    buffer_start: int = 13
    buffer_end: int = 15
    afternoon_start: int = 15
    time_step_minutes: int = 60
    policy_version: str = "v3"

    def __post_init__(self):
        if not 0 <= self.operating_start < self.operating_end <= 24:
            raise ValueError(
                f"Invalid operating window: {self.operating_start}-{self.operating_end}"
            )
        if not (
            self.operating_start
            < self.morning_end
            <= self.buffer_start
            <= self.buffer_end
            <= self.afternoon_start
            < self.operating_end
        ):
            raise ValueError(
                "Policy windows must be ordered: operating_start < morning_end <= "
                "buffer_start <= buffer_end <= afternoon_start < operating_end"
            )
        if not 1 <= self.min_hours <= self.max_hours:
            raise ValueError(f"Invalid trip bounds: {self.min_hours}-{self.max_hours}")

    @property
    def morning_start(self) -> int:
        return self.operating_start

    @property
    def afternoon_end(self) -> int:
        return self.operating_end


@dataclass
class ProviderConfig:
    base_url: str = "https://api.cal.com"
    api_key: str = ""
    api_version: str = "2024-08-13"
    platform_client_id: str = ""
    platform_secret_key: str = ""
    timeout_seconds: float = 30.0
    bookings_page_size: int = 250
    bookings_max_pages: int = 8


@dataclass
class RateLimitConfig:
    max_requests: int = 12
    window_minutes: int = 60
    salt: str = "booking-rate-limit-default-salt"


@dataclass
class TurnstileConfig:
    secret_key: str = ""
    verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    api_key: str = ""  # Bearer key for /api/internal/*; empty disables them
    allowed_origins: list[str] = field(default_factory=list)


@dataclass
class YachtConfig:
    slug: str = ""
    name: str = ""
    vessel_type: str = ""
    capacity: int = 0
    booking_mode: str = BOOKING_MODE_LEGACY
    public_enabled: bool = False
    live_from: str | None = None  # "2026-03-01"; days before it are closed
    event_type_id: int | None = None


@dataclass
class Config:
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    turnstile: TurnstileConfig = field(default_factory=TurnstileConfig)
    web: WebConfig = field(default_factory=WebConfig)
    yachts: list[YachtConfig] = field(default_factory=list)
    database_path: str = "charterbook.db"

    def get_yacht(self, slug: str) -> YachtConfig | None:
        for yacht in self.yachts:
            if yacht.slug == slug:
                return yacht
        return None


def _resolve_env_vars(value: str) -> str:
    """Replace ${VAR} with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _resolve_dict(d: dict) -> dict:
    """Recursively resolve env vars in a dict."""
    resolved = {}
    for k, v in d.items():
        if isinstance(v, str):
            resolved[k] = _resolve_env_vars(v)
        elif isinstance(v, dict):
            resolved[k] = _resolve_dict(v)
        elif isinstance(v, list):
            resolved[k] = [
                _resolve_dict(i) if isinstance(i, dict)
                else _resolve_env_vars(i) if isinstance(i, str)
                else i
                for i in v
            ]
        else:
            resolved[k] = v
    return resolved


def _unset(value) -> bool:
    """True for missing values and for ${VAR} placeholders left unresolved."""
    return value is None or value == "" or (isinstance(value, str) and value.startswith("${"))


def _as_str(value, default: str = "") -> str:
    return default if _unset(value) else str(value)


def _as_int(value, default: int) -> int:
    return default if _unset(value) else int(value)


def _as_float(value, default: float) -> float:
    return default if _unset(value) else float(value)


def _as_bool(value, default: bool = False) -> bool:
    if _unset(value):
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _as_date_key(value) -> str | None:
    # YAML turns an unquoted 2026-03-01 into a date object
    if isinstance(value, date):
        return value.isoformat()
    return None if _unset(value) else str(value)


def _parse_origins(value) -> list[str]:
    if _unset(value):
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [o.strip() for o in value if isinstance(o, str) and o.strip()]


def load_config(config_path: str | Path, env_path: str | Path | None = None) -> Config:
    """Load config from YAML file with env var resolution."""
    config_path = Path(config_path).resolve()
    config_dir = config_path.parent

    if env_path:
        load_dotenv(env_path)
    else:
        # Look for .env next to config file first, then CWD
        env_beside_config = config_dir / ".env"
        if env_beside_config.exists():
            load_dotenv(env_beside_config)
        else:
            load_dotenv()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _resolve_dict(raw)

    defaults = PolicyConfig()
    policy_data = raw.get("policy", {})
    policy = PolicyConfig(
        timezone=_as_str(policy_data.get("timezone"), defaults.timezone),
        min_hours=_as_int(policy_data.get("min_hours"), defaults.min_hours),
        max_hours=_as_int(policy_data.get("max_hours"), defaults.max_hours),
        operating_start=_as_int(policy_data.get("operating_start"), defaults.operating_start),
        operating_end=_as_int(policy_data.get("operating_end"), defaults.operating_end),
        morning_end=_as_int(policy_data.get("morning_end"), defaults.morning_end),
        buffer_start=_as_int(policy_data.get("buffer_start"), defaults.buffer_start),
        buffer_end=_as_int(policy_data.get("buffer_end"), defaults.buffer_end),
        afternoon_start=_as_int(policy_data.get("afternoon_start"), defaults.afternoon_start),
        policy_version=_as_str(policy_data.get("policy_version"), defaults.policy_version),
    )

    provider_data = raw.get("provider", {})
    provider = ProviderConfig(
        base_url=_as_str(provider_data.get("base_url"), "https://api.cal.com").rstrip("/"),
        api_key=_as_str(provider_data.get("api_key")),
        api_version=_as_str(provider_data.get("api_version"), "2024-08-13"),
        platform_client_id=_as_str(provider_data.get("platform_client_id")),
        platform_secret_key=_as_str(provider_data.get("platform_secret_key")),
        timeout_seconds=_as_float(provider_data.get("timeout_seconds"), 30.0),
        bookings_page_size=_as_int(provider_data.get("bookings_page_size"), 250),
        bookings_max_pages=_as_int(provider_data.get("bookings_max_pages"), 8),
    )

    rl_data = raw.get("rate_limit", {})
    max_requests = _as_int(rl_data.get("max_requests"), 12)
    window_minutes = _as_int(rl_data.get("window_minutes"), 60)
    rate_limit = RateLimitConfig(
        max_requests=max_requests if max_requests > 0 else 12,
        window_minutes=window_minutes if window_minutes > 0 else 60,
        salt=_as_str(rl_data.get("salt"), "booking-rate-limit-default-salt"),
    )

    ts_data = raw.get("turnstile", {})
    turnstile = TurnstileConfig(
        secret_key=_as_str(ts_data.get("secret_key")),
    )

    web_data = raw.get("web", {})
    port = _as_int(web_data.get("port"), 8080)
    if not (1 <= port <= 65535):
        raise ValueError(f"Invalid web port: {port}. Must be 1-65535.")
    web = WebConfig(
        host=_as_str(web_data.get("host"), "0.0.0.0"),
        port=port,
        api_key=_as_str(web_data.get("api_key")),
        allowed_origins=_parse_origins(web_data.get("allowed_origins")),
    )

    yachts = []
    for y in raw.get("yachts", []):
        if not isinstance(y, dict) or not y.get("slug"):
            continue
        event_type_id = y.get("event_type_id")
        yachts.append(YachtConfig(
            slug=str(y["slug"]).strip(),
            name=_as_str(y.get("name")),
            vessel_type=_as_str(y.get("vessel_type")),
            capacity=_as_int(y.get("capacity"), 0),
            booking_mode=_as_str(y.get("booking_mode"), BOOKING_MODE_LEGACY),
            public_enabled=_as_bool(y.get("public_enabled")),
            live_from=_as_date_key(y.get("live_from")),
            event_type_id=None if _unset(event_type_id) else int(event_type_id),
        ))

    database_path = os.environ.get("DATABASE_PATH") or raw.get("database_path") or "charterbook.db"

    return Config(
        policy=policy,
        provider=provider,
        rate_limit=rate_limit,
        turnstile=turnstile,
        web=web,
        yachts=yachts,
        database_path=str(database_path),
    )
