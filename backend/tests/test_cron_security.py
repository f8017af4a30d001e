from __future__ import annotations

import pytest

from metric_scheduler.config import Settings
from metric_scheduler.cron_security import CronAuthError, require_cron_secret, verify_cron_secret


def test_matching_bearer_secret_is_verified() -> None:
    settings = Settings(cron_secret="cron-secret-001")

    verification = verify_cron_secret(settings=settings, headers={"Authorization": "Bearer cron-secret-001"})

    assert verification.verified is True
    assert verification.reason is None


def test_unset_secret_rejects_everything() -> None:
    settings = Settings(cron_secret="")

    verification = verify_cron_secret(settings=settings, headers={"Authorization": "Bearer "})

    assert verification.verified is False
    assert verification.reason == "cron_secret_missing"


@pytest.mark.parametrize(
    ("headers", "reason"),
    [
        ({}, "authorization_missing"),
        ({"Authorization": "cron-secret-001"}, "authorization_missing"),
        ({"Authorization": "Basic cron-secret-001"}, "authorization_missing"),
        ({"Authorization": "Bearer wrong"}, "secret_mismatch"),
    ],
)
def test_missing_or_wrong_secret_is_rejected(headers: dict[str, str], reason: str) -> None:
    settings = Settings(cron_secret="cron-secret-001")

    verification = verify_cron_secret(settings=settings, headers=headers)

    assert verification.verified is False
    assert verification.reason == reason


def test_require_cron_secret_raises_with_reason() -> None:
    with pytest.raises(CronAuthError) as excinfo:
        require_cron_secret(settings=Settings(cron_secret="cron-secret-001"), headers={"Authorization": "Bearer nope"})
    assert excinfo.value.reason == "secret_mismatch"
