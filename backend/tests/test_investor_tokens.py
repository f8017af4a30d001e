from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from metric_scheduler.investor_tokens import (
    InvestorTokenError,
    NotAnInvestorError,
    authenticate_investor,
    decode_investor_token,
    issue_investor_token,
)
from metric_scheduler.store import InMemoryScheduleStore, UserRecord

SECRET = "investor-secret-001"
NOW = datetime(2026, 4, 1, 12, 0, tzinfo=timezone.utc)


def _store() -> InMemoryScheduleStore:
    store = InMemoryScheduleStore()
    store.add_user(UserRecord(user_id="inv-1", email="jane@fund.example", full_name="Jane", role="investor"))
    store.add_user(UserRecord(user_id="fdr-1", email="ada@startup.example", full_name="Ada", role="founder"))
    return store


def _bearer(investor_id: str) -> str:
    token = issue_investor_token(investor_id=investor_id, secret=SECRET, ttl_minutes=30, now=NOW)
    return f"Bearer {token}"


def test_issue_and_decode_round_trip() -> None:
    token = issue_investor_token(investor_id="inv-1", secret=SECRET, ttl_minutes=30, now=NOW)

    claims = decode_investor_token(token, secret=SECRET, now=NOW + timedelta(minutes=5))

    assert claims.investor_id == "inv-1"
    assert claims.expires_at == NOW + timedelta(minutes=30)


def test_expired_token_is_rejected() -> None:
    token = issue_investor_token(investor_id="inv-1", secret=SECRET, ttl_minutes=30, now=NOW)

    with pytest.raises(InvestorTokenError, match="expired"):
        decode_investor_token(token, secret=SECRET, now=NOW + timedelta(minutes=31))


def test_tampered_token_is_rejected() -> None:
    token = issue_investor_token(investor_id="inv-1", secret=SECRET, ttl_minutes=30)
    forged = issue_investor_token(investor_id="inv-2", secret="other", ttl_minutes=30)

    with pytest.raises(InvestorTokenError, match="signature"):
        decode_investor_token(forged, secret=SECRET)
    with pytest.raises(InvestorTokenError, match="signature"):
        decode_investor_token(f"{token.split('.')[0]}.deadbeef", secret=SECRET)


@pytest.mark.parametrize("token", ["", "no-dot-here"])
def test_malformed_token_is_rejected(token: str) -> None:
    with pytest.raises(InvestorTokenError, match="format"):
        decode_investor_token(token, secret=SECRET)


def test_blank_investor_id_and_secret_are_rejected() -> None:
    with pytest.raises(InvestorTokenError):
        issue_investor_token(investor_id="  ", secret=SECRET, ttl_minutes=30)
    with pytest.raises(InvestorTokenError):
        issue_investor_token(investor_id="inv-1", secret="", ttl_minutes=30)


def test_authenticate_investor_returns_stored_account() -> None:
    user = authenticate_investor(_bearer("inv-1"), secret=SECRET, store=_store(), now=NOW)

    assert user.user_id == "inv-1"
    assert user.role == "investor"


@pytest.mark.parametrize("header", [None, "", "Bearer ", "Basic abc.def"])
def test_authenticate_investor_requires_bearer_session(header: str | None) -> None:
    with pytest.raises(InvestorTokenError, match="session required"):
        authenticate_investor(header, secret=SECRET, store=_store(), now=NOW)


def test_authenticate_investor_rejects_accounts_without_investor_role() -> None:
    store = _store()

    with pytest.raises(NotAnInvestorError):
        authenticate_investor(_bearer("fdr-1"), secret=SECRET, store=store, now=NOW)
    with pytest.raises(NotAnInvestorError):
        authenticate_investor(_bearer("inv-unknown"), secret=SECRET, store=store, now=NOW)
