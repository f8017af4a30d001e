from __future__ import annotations

import os

import pytest

from metric_scheduler.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "CRON_SECRET": "prod-cron-secret-001",
        "INVESTOR_SESSION_SECRET": "prod-investor-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "EMAIL_SENDER_TYPE": "stub",
        "EMAIL_API_KEY": None,
        "SCHEDULE_STORE_BACKEND": "inmemory",
    }


def test_create_app_starts_with_real_secrets_in_enforce_mode() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Metric Request Scheduler"
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_cron_secret_in_enforce_mode() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "CRON_SECRET": "change-me"})
    try:
        with pytest.raises(RuntimeError, match="CRON_SECRET"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_blocks_http_sender_without_key_in_enforce_mode() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "EMAIL_SENDER_TYPE": "http"})
    try:
        with pytest.raises(RuntimeError, match="EMAIL_API_KEY"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "CRON_SECRET": None,
            "RUNTIME_SECRET_GUARD_MODE": "warn",
        }
    )
    try:
        with caplog.at_level("WARNING", logger="metric_scheduler.main"):
            app = create_app()
        assert app.title == "Metric Request Scheduler"
        assert any("CRON_SECRET" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
