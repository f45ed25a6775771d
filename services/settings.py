"""
Broker configuration.

Values come from the process environment; a `.env` file in the project root
is loaded first when present. Nothing here talks to the network, so loading
settings never fails for missing credentials. Clients that need them raise
when they are built.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import FrozenSet, Optional

from dotenv import load_dotenv

from domain.schedule import ALL_WEEKDAYS, ActiveWindow

_ENV_PATH = Path(__file__).parent.parent / ".env"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _get_time(name: str, default: time) -> time:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return time.fromisoformat(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must look like HH:MM, got {raw!r}") from exc


def _get_weekdays(name: str) -> FrozenSet[int]:
    """Comma-separated ISO weekdays, e.g. "1,2,3,4,5" for Monday to Friday."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return ALL_WEEKDAYS
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must list ISO weekdays, got {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class BrokerSettings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    textmagic_username: Optional[str] = None
    textmagic_api_key: Optional[str] = None
    textmagic_from_number: Optional[str] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    public_base_url: str = "http://localhost:8000"
    # Shared secret expected in the X-Webhook-Secret header of form/SMS webhooks.
    webhook_secret: Optional[str] = None

    unlock_price_cents: int = 2000
    unlock_ttl_hours: int = 24
    lead_ttl_hours: int = 24
    rate_limit_max_sends: int = 10
    rate_limit_window_minutes: int = 60
    retention_days: int = 30

    active_window: ActiveWindow = field(default_factory=ActiveWindow)

    scheduler_interval_seconds: int = 300
    scheduler_enabled: bool = True

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, load_env_file: bool = True) -> "BrokerSettings":
        if load_env_file:
            load_dotenv(dotenv_path=_ENV_PATH)

        window = ActiveWindow(
            start=_get_time("ACTIVE_WINDOW_START", time(8, 0)),
            end=_get_time("ACTIVE_WINDOW_END", time(21, 30)),
            timezone=os.getenv("ACTIVE_WINDOW_TIMEZONE") or "America/New_York",
            weekdays=_get_weekdays("ACTIVE_WINDOW_DAYS"),
        )

        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_key=os.getenv("SUPABASE_KEY"),
            textmagic_username=os.getenv("TEXTMAGIC_USERNAME"),
            textmagic_api_key=os.getenv("TEXTMAGIC_API_KEY"),
            textmagic_from_number=os.getenv("TEXTMAGIC_FROM_NUMBER"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL") or "gpt-4o-mini",
            public_base_url=(os.getenv("PUBLIC_BASE_URL") or "http://localhost:8000").rstrip("/"),
            webhook_secret=os.getenv("WEBHOOK_SECRET"),
            unlock_price_cents=_get_int("UNLOCK_PRICE_CENTS", 2000),
            unlock_ttl_hours=_get_int("UNLOCK_TTL_HOURS", 24),
            lead_ttl_hours=_get_int("LEAD_TTL_HOURS", 24),
            rate_limit_max_sends=_get_int("RATE_LIMIT_MAX_SENDS", 10),
            rate_limit_window_minutes=_get_int("RATE_LIMIT_WINDOW_MINUTES", 60),
            retention_days=_get_int("RETENTION_DAYS", 30),
            active_window=window,
            scheduler_interval_seconds=_get_int("SCHEDULER_INTERVAL_SECONDS", 300),
            scheduler_enabled=_get_bool("SCHEDULER_ENABLED", True),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )

    @property
    def unlock_price_display(self) -> str:
        dollars, cents = divmod(self.unlock_price_cents, 100)
        return f"${dollars}" if cents == 0 else f"${dollars}.{cents:02d}"


__all__ = ["BrokerSettings"]
