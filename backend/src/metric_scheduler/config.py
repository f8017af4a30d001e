from __future__ import annotations

import os
from dataclasses import dataclass

from .notifier import MAX_BATCH_SIZE


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Metric Request Scheduler"
    api_prefix: str = "/api/v1"
    app_env: str = "development"
    cron_secret: str = ""
    investor_session_secret: str = "dev-investor-secret"
    investor_session_ttl_minutes: int = 120
    schedule_store_backend: str = "inmemory"
    database_url: str = ""
    # Outbound founder email.
    email_sender_type: str = "stub"
    email_enabled: bool = False
    email_dry_run: bool = False
    email_api_base_url: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from_address: str = "Portfolio Metrics <onboarding@resend.dev>"
    email_timeout_seconds: int = 30
    email_batch_size: int = MAX_BATCH_SIZE
    email_max_retries: int = 3
    email_retry_base_seconds: float = 1.0
    app_base_url: str = "http://localhost:3000"
    reminder_sweep_limit: int = 500
    runtime_secret_guard_mode: str = "warn"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("SCHEDULER_APP_NAME", "Metric Request Scheduler"),
        api_prefix=os.getenv("SCHEDULER_API_PREFIX", "/api/v1"),
        app_env=_normalize_mode(
            os.getenv("APP_ENV"),
            default="development",
            allowed={"development", "production", "test"},
        ),
        cron_secret=os.getenv("CRON_SECRET", ""),
        investor_session_secret=os.getenv("INVESTOR_SESSION_SECRET", "dev-investor-secret"),
        investor_session_ttl_minutes=_as_int(os.getenv("INVESTOR_SESSION_TTL_MINUTES"), 120),
        schedule_store_backend=os.getenv("SCHEDULE_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), False),
        email_dry_run=_as_bool(os.getenv("EMAIL_DRY_RUN"), False),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", "https://api.resend.com"),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "Portfolio Metrics <onboarding@resend.dev>"),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        email_batch_size=max(1, min(MAX_BATCH_SIZE, _as_int(os.getenv("EMAIL_BATCH_SIZE"), MAX_BATCH_SIZE))),
        email_max_retries=max(0, _as_int(os.getenv("EMAIL_MAX_RETRIES"), 3)),
        email_retry_base_seconds=max(0.0, _as_float(os.getenv("EMAIL_RETRY_BASE_SECONDS"), 1.0)),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        reminder_sweep_limit=max(1, _as_int(os.getenv("REMINDER_SWEEP_LIMIT"), 500)),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a placeholder value; trigger endpoints reject every call")
    if _is_placeholder(
        settings.investor_session_secret,
        defaults={"dev-investor-secret", "change-me-in-production"},
    ):
        issues.append("INVESTOR_SESSION_SECRET is empty or uses a development placeholder")
    if settings.email_sender_type == "http" and not settings.email_api_key.strip():
        issues.append("EMAIL_API_KEY is required when EMAIL_SENDER_TYPE=http")
    if settings.schedule_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when SCHEDULE_STORE_BACKEND=postgres")
    return tuple(issues)
