from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _optional_env(name: str) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or None


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    channel_webhook_secret: str
    gateway_url: Optional[str]
    gateway_token: str
    gateway_timeout_seconds: int
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    scheduler_enabled: bool
    sweep_hour: int
    sweep_minute: int
    timezone: str
    address_suffix: str
    oversight_contact: Optional[str]
    overdue_threshold_days: int
    correction_window_seconds: int
    reminder_tier1_days: int
    reminder_tier2_days: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/sample_desk.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        channel_webhook_secret=os.getenv("CHANNEL_WEBHOOK_SECRET", "").strip(),
        gateway_url=_optional_env("GATEWAY_URL"),
        gateway_token=os.getenv("GATEWAY_TOKEN", "").strip(),
        gateway_timeout_seconds=max(1, min(60, _int_env("GATEWAY_TIMEOUT_SECONDS", 10))),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        scheduler_enabled=_bool_env("SCHEDULER_ENABLED", True),
        sweep_hour=max(0, min(23, _int_env("SWEEP_HOUR", 9))),
        sweep_minute=max(0, min(59, _int_env("SWEEP_MINUTE", 0))),
        timezone=os.getenv("TIMEZONE", "America/Sao_Paulo").strip(),
        address_suffix=os.getenv("ADDRESS_SUFFIX", "@c.us").strip(),
        oversight_contact=_optional_env("OVERSIGHT_CONTACT"),
        overdue_threshold_days=max(1, min(365, _int_env("OVERDUE_THRESHOLD_DAYS", 7))),
        correction_window_seconds=max(1, min(86400, _int_env("CORRECTION_WINDOW_SECONDS", 300))),
        reminder_tier1_days=max(1, min(365, _int_env("REMINDER_TIER1_DAYS", 8))),
        reminder_tier2_days=max(1, min(365, _int_env("REMINDER_TIER2_DAYS", 14))),
    )
