from __future__ import annotations

import os
from dataclasses import dataclass


class ServerMisconfigurationError(RuntimeError):
    pass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    whatsapp_webhook_secret: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    default_sla_minutes: int
    messaging_provider: str
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_whatsapp_from: str
    provider_timeout_seconds: float
    dispatch_batch_limit: int
    app_base_url: str
    ai_planner_model: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/lead_autopilot.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", "").strip(),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        default_sla_minutes=max(1, min(10080, _int_env("DEFAULT_SLA_MINUTES", 15))),
        messaging_provider=os.getenv("MESSAGING_PROVIDER", "stub").strip().lower(),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
        twilio_whatsapp_from=os.getenv("TWILIO_WHATSAPP_FROM", "").strip(),
        provider_timeout_seconds=max(1.0, min(60.0, _float_env("PROVIDER_TIMEOUT_SECONDS", 10.0))),
        dispatch_batch_limit=max(1, min(500, _int_env("DISPATCH_BATCH_LIMIT", 20))),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").strip().rstrip("/"),
        ai_planner_model=os.getenv("AI_PLANNER_MODEL", "stub-planner").strip(),
    )
