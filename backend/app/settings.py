from __future__ import annotations

import os
from dataclasses import dataclass


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


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    whatsapp_webhook_secret: str
    whatsapp_verify_token: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    default_tenant_id: int
    correlation_window_minutes: int
    click_dedup_window_seconds: int
    tracking_base_url: str
    tracking_fallback_url: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/wa_attribution.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", "").strip(),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", "").strip(),
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        default_tenant_id=max(1, _int_env("DEFAULT_TENANT_ID", 1)),
        correlation_window_minutes=max(1, min(1440, _int_env("CORRELATION_WINDOW_MINUTES", 30))),
        click_dedup_window_seconds=max(0, min(3600, _int_env("CLICK_DEDUP_WINDOW_SECONDS", 10))),
        tracking_base_url=os.getenv("TRACKING_BASE_URL", "http://localhost:8000").strip().rstrip("/"),
        tracking_fallback_url=os.getenv("TRACKING_FALLBACK_URL", "https://wa.me/").strip(),
    )
