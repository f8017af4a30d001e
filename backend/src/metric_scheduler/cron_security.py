from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings


class CronAuthError(Exception):
    """Raised when a trigger request does not carry the shared cron secret."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class CronSecretVerification:
    verified: bool
    reason: str | None = None


def _bearer_token(value: str | None) -> str | None:
    if value is None:
        return None
    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def verify_cron_secret(*, settings: Settings, headers: Mapping[str, str]) -> CronSecretVerification:
    secret = settings.cron_secret.strip()
    if not secret:
        return CronSecretVerification(verified=False, reason="cron_secret_missing")

    token = _bearer_token(headers.get("Authorization") or headers.get("authorization"))
    if token is None:
        return CronSecretVerification(verified=False, reason="authorization_missing")

    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        return CronSecretVerification(verified=False, reason="secret_mismatch")

    return CronSecretVerification(verified=True)


def require_cron_secret(*, settings: Settings, headers: Mapping[str, str]) -> None:
    verification = verify_cron_secret(settings=settings, headers=headers)
    if not verification.verified:
        raise CronAuthError(verification.reason or "unauthorized")
