"""Investor identity for the schedule endpoints.

A session token is ``<base64url claims>.<hex hmac-sha256>`` with claims
``{"sub": investor_id, "role": "investor", "exp": unix_seconds}``. The token
only proves who signed in; the investor role is confirmed against the stored
user on every request, so a demoted account loses access before its token
expires.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .store import ScheduleStore, UserRecord

INVESTOR_ROLE = "investor"


class InvestorTokenError(ValueError):
    """Raised when investor session tokens are missing, invalid or expired."""


class NotAnInvestorError(PermissionError):
    """Raised when a valid session belongs to an account without the investor role."""


@dataclass(frozen=True)
class InvestorClaims:
    investor_id: str
    expires_at: datetime


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64url(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _signature(claims_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), claims_b64.encode("ascii"), hashlib.sha256).hexdigest()


def issue_investor_token(
    *,
    investor_id: str,
    secret: str,
    ttl_minutes: int,
    now: datetime | None = None,
) -> str:
    investor_id = investor_id.strip()
    if not investor_id:
        raise InvestorTokenError("investor_id is empty")
    if not secret:
        raise InvestorTokenError("investor session secret is empty")
    expires_at = (now or datetime.now(timezone.utc)) + timedelta(minutes=ttl_minutes)
    claims = {"sub": investor_id, "role": INVESTOR_ROLE, "exp": int(expires_at.timestamp())}
    claims_b64 = _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{claims_b64}.{_signature(claims_b64, secret)}"


def decode_investor_token(token: str, *, secret: str, now: datetime | None = None) -> InvestorClaims:
    if not secret:
        raise InvestorTokenError("investor session secret is empty")
    claims_b64, dot, signature = token.strip().rpartition(".")
    if not dot or not claims_b64:
        raise InvestorTokenError("invalid token format")
    if not hmac.compare_digest(signature, _signature(claims_b64, secret)):
        raise InvestorTokenError("token signature mismatch")

    try:
        claims = json.loads(_unb64url(claims_b64).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvestorTokenError("token payload decoding failed") from exc
    if not isinstance(claims, dict) or claims.get("role") != INVESTOR_ROLE:
        raise InvestorTokenError("not an investor session")

    investor_id = str(claims.get("sub", "")).strip()
    if not investor_id:
        raise InvestorTokenError("token subject missing")
    try:
        expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise InvestorTokenError("token expiration missing") from exc
    if expires_at <= (now or datetime.now(timezone.utc)):
        raise InvestorTokenError("token expired")
    return InvestorClaims(investor_id=investor_id, expires_at=expires_at)


def authenticate_investor(
    authorization: str | None,
    *,
    secret: str,
    store: ScheduleStore,
    now: datetime | None = None,
) -> UserRecord:
    """Resolve an ``Authorization: Bearer`` header to the stored investor account."""
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvestorTokenError("investor session required")
    claims = decode_investor_token(token, secret=secret, now=now)
    user = store.get_user(claims.investor_id)
    if user is None or user.role != INVESTOR_ROLE:
        raise NotAnInvestorError(claims.investor_id)
    return user
