from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import Settings, get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def _guard_runtime_secrets(settings: Settings) -> None:
    issues = runtime_secret_issues(settings)
    if not issues or settings.runtime_secret_guard_mode == "off":
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(issues)
            + ". Remediation: set CRON_SECRET and INVESTOR_SESSION_SECRET, EMAIL_API_KEY "
            + "when EMAIL_SENDER_TYPE=http, and DATABASE_URL when SCHEDULE_STORE_BACKEND=postgres."
        )
    for issue in issues:
        logger.warning("runtime secret guard warning: %s", issue)


def _app_origin(app_base_url: str) -> str:
    """Scheme and host of the founder portal, used as the only CORS origin."""
    origin = app_base_url.strip().rstrip("/")
    if "://" in origin:
        origin = "/".join(origin.split("/")[:3])
    return origin


def create_app() -> FastAPI:
    settings = get_settings()
    _guard_runtime_secrets(settings)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[_app_origin(settings.app_base_url)],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Authorization", "Content-Type"],
    )
    app.include_router(router)

    logger.info(
        "scheduler app created env=%s store_backend=%s email_sender=%s email_dry_run=%s",
        settings.app_env,
        settings.schedule_store_backend,
        settings.email_sender_type,
        settings.email_dry_run,
    )
    return app


app = create_app()
