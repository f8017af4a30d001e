from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from metric_scheduler.dispatcher import (
    NotificationDispatcher,
    group_by_founder,
    render_reminder_email,
    render_request_email,
)
from metric_scheduler.notifier import BatchSendResult, EmailMessage, StubEmailSender
from metric_scheduler.store import CompanyContact, UserRecord


class _ScriptedSender:
    """Returns queued results in order, then accepts everything."""

    def __init__(self, results: list[BatchSendResult] | None = None) -> None:
        self.results = list(results or [])
        self.batches: list[list[EmailMessage]] = []

    def send_batch(self, messages: list[EmailMessage]) -> BatchSendResult:
        self.batches.append(list(messages))
        if self.results:
            return self.results.pop(0)
        return BatchSendResult(status="sent", attempted_at=datetime.now(timezone.utc))


def _failed(*, retryable: bool, error_code: str = "http_503") -> BatchSendResult:
    return BatchSendResult(
        status="failed",
        attempted_at=datetime.now(timezone.utc),
        retryable=retryable,
        error_code=error_code,
        error_message="provider error",
    )


def _messages(count: int) -> list[EmailMessage]:
    return [
        EmailMessage(
            to=f"founder{index}@example.com",
            subject="Metrics requested",
            html="<p>hi</p>",
            founder_id=f"founder-{index}",
        )
        for index in range(count)
    ]


def _contact(company_id: str, name: str, founder: UserRecord | None) -> CompanyContact:
    return CompanyContact(company_id=company_id, company_name=name, founder=founder)


def _founder(user_id: str = "founder-1", email: str | None = "ada@example.com") -> UserRecord:
    return UserRecord(user_id=user_id, email=email, full_name="Ada Founder")


def test_dispatch_splits_into_batches_of_at_most_100() -> None:
    sender = _ScriptedSender()
    dispatcher = NotificationDispatcher(sender=sender, sleep=lambda _: None)

    outcome = dispatcher.dispatch(_messages(250))

    assert [len(batch) for batch in sender.batches] == [100, 100, 50]
    assert outcome.emails_sent == 250
    assert outcome.dropped_batches == 0
    assert len(outcome.delivered_founder_ids) == 250


def test_batch_size_is_capped_at_provider_limit() -> None:
    sender = _ScriptedSender()
    dispatcher = NotificationDispatcher(sender=sender, batch_size=500, sleep=lambda _: None)

    dispatcher.dispatch(_messages(150))

    assert [len(batch) for batch in sender.batches] == [100, 50]


def test_batch_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        NotificationDispatcher(sender=_ScriptedSender(), batch_size=0)


def test_retryable_failure_backs_off_exponentially_then_succeeds() -> None:
    sleeps: list[float] = []
    sender = _ScriptedSender([_failed(retryable=True), _failed(retryable=True)])
    dispatcher = NotificationDispatcher(sender=sender, sleep=sleeps.append)

    outcome = dispatcher.dispatch(_messages(3))

    assert len(sender.batches) == 3
    assert sleeps == [1.0, 2.0]
    assert outcome.emails_sent == 3


def test_retryable_failure_is_dropped_after_max_retries() -> None:
    sleeps: list[float] = []
    sender = _ScriptedSender([_failed(retryable=True) for _ in range(4)])
    dispatcher = NotificationDispatcher(sender=sender, sleep=sleeps.append)

    outcome = dispatcher.dispatch(_messages(2))

    assert len(sender.batches) == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert outcome.emails_sent == 0
    assert outcome.dropped_batches == 1
    assert outcome.delivered_founder_ids == frozenset()


def test_client_error_is_not_retried() -> None:
    sleeps: list[float] = []
    sender = _ScriptedSender([_failed(retryable=False, error_code="http_422")])
    dispatcher = NotificationDispatcher(sender=sender, sleep=sleeps.append)

    outcome = dispatcher.dispatch(_messages(2))

    assert len(sender.batches) == 1
    assert sleeps == []
    assert outcome.emails_sent == 0
    assert outcome.dropped_batches == 1


def test_one_dropped_batch_does_not_stop_the_next() -> None:
    sender = _ScriptedSender([_failed(retryable=False)])
    dispatcher = NotificationDispatcher(sender=sender, batch_size=2, sleep=lambda _: None)

    outcome = dispatcher.dispatch(_messages(4))

    assert outcome.emails_sent == 2
    assert outcome.dropped_batches == 1
    assert outcome.delivered_founder_ids == frozenset({"founder-2", "founder-3"})


def test_per_recipient_results_count_only_accepted_messages() -> None:
    sender = StubEmailSender(enabled=True)
    dispatcher = NotificationDispatcher(sender=sender, sleep=lambda _: None)
    messages = _messages(2) + [EmailMessage(to="fail@example.com", subject="s", html="h", founder_id="founder-x")]

    outcome = dispatcher.dispatch(messages)

    assert outcome.emails_sent == 2
    assert "founder-x" not in outcome.delivered_founder_ids
    assert [message.to for message in sender.sent] == ["founder0@example.com", "founder1@example.com"]


def test_dry_run_counts_messages_without_calling_provider() -> None:
    sender = _ScriptedSender()
    dispatcher = NotificationDispatcher(sender=sender, dry_run=True)

    outcome = dispatcher.dispatch(_messages(3))

    assert dispatcher.dry_run is True
    assert sender.batches == []
    assert outcome.emails_sent == 3
    assert outcome.delivered_founder_ids == frozenset({"founder-0", "founder-1", "founder-2"})


def test_messages_without_recipient_are_skipped() -> None:
    sender = _ScriptedSender()
    dispatcher = NotificationDispatcher(sender=sender)

    outcome = dispatcher.dispatch([EmailMessage(to="", subject="s", html="h")])

    assert sender.batches == []
    assert outcome.emails_sent == 0


def test_group_by_founder_collapses_companies_into_one_notice() -> None:
    founder = _founder()
    entries = [
        (_contact("co-1", "Acme", founder), "Revenue", "req-1"),
        (_contact("co-2", "Globex", founder), "Revenue", "req-2"),
        (_contact("co-3", "Initech", founder), "Revenue", "req-3"),
        (_contact("co-1", "Acme", founder), "Burn Rate", "req-4"),
        (_contact("co-4", "Orphan Co", None), "Revenue", "req-5"),
        (_contact("co-5", "No Email Co", _founder("founder-2", email="  ")), "Revenue", "req-6"),
    ]

    notices = group_by_founder(entries)

    assert len(notices) == 1
    assert notices[0].company_names == ["Acme", "Globex", "Initech"]
    assert notices[0].metric_names == ["Revenue", "Burn Rate"]
    assert notices[0].reference_ids == ["req-1", "req-2", "req-3", "req-4"]


def test_request_email_escapes_interpolated_names() -> None:
    founder = UserRecord(user_id="founder-1", email="ada@example.com", full_name="<Ada>")
    notices = group_by_founder([(_contact("co-1", "Acme & Sons", founder), "Revenue <USD>", "req-1")])

    message = render_request_email(
        notices[0],
        investor_name="Jane <VC>",
        period_label="Q1 2026",
        period_end=date(2026, 3, 31),
        due_date=date(2026, 4, 12),
        app_base_url="https://app.example.com/",
    )

    assert message.to == "ada@example.com"
    assert message.founder_id == "founder-1"
    assert message.subject == "Jane <VC> requested your metrics"
    assert "Acme &amp; Sons" in message.html
    assert "Revenue &lt;USD&gt;" in message.html
    assert "Jane &lt;VC&gt;" in message.html
    assert "&lt;Ada&gt;" in message.html
    assert "https://app.example.com/portal/requests" in message.html
    assert "2026-04-12" in message.html


def test_reminder_email_subject_describes_time_until_due() -> None:
    notices = group_by_founder([(_contact("co-1", "Acme", _founder()), "Revenue", "rem-1")])

    assert render_reminder_email(notices[0], days_until_due=0, app_base_url="x").subject == "Reminder: Metrics due today"
    assert (
        render_reminder_email(notices[0], days_until_due=1, app_base_url="x").subject
        == "Reminder: Metrics due tomorrow"
    )
    assert (
        render_reminder_email(notices[0], days_until_due=3, app_base_url="x").subject
        == "Reminder: Metrics due in 3 days"
    )
