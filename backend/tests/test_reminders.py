from __future__ import annotations

from datetime import datetime, timezone

from metric_scheduler.dispatcher import NotificationDispatcher
from metric_scheduler.fanout import FanoutEngine
from metric_scheduler.notifier import StubEmailSender
from metric_scheduler.reminders import ReminderSweeper
from metric_scheduler.store import (
    CompanyRecord,
    InMemoryScheduleStore,
    TemplateItemRecord,
    TemplateRecord,
    UserRecord,
)

RUN_AT = datetime(2026, 4, 5, 6, tzinfo=timezone.utc)
FIRST_REMINDER = datetime(2026, 4, 9, 9, tzinfo=timezone.utc)
SECOND_REMINDER = datetime(2026, 4, 11, 9, tzinfo=timezone.utc)


def _seeded_store(*, founder_email: str = "ada@startup.example") -> tuple[InMemoryScheduleStore, str]:
    store = InMemoryScheduleStore()
    store.add_user(UserRecord(user_id="inv-1", email=None, full_name="Jane", role="investor"))
    store.add_user(UserRecord(user_id="founder-1", email=founder_email, full_name="Ada"))
    for company_id in ("co-1", "co-2"):
        store.add_company(CompanyRecord(company_id=company_id, name=f"Company {company_id}", founder_id="founder-1"))
        store.link_portfolio_company("inv-1", company_id)
    store.add_template(
        TemplateRecord(
            template_id="tpl-1",
            name="Quarterly",
            investor_id="inv-1",
            is_system=False,
            items=(TemplateItemRecord(metric_name="Revenue", period_type="quarterly"),),
        )
    )
    schedule = store.create_schedule(
        investor_id="inv-1",
        template_id="tpl-1",
        name="Quarterly",
        cadence="quarterly",
        day_of_month=5,
        company_ids=None,
        include_future_companies=False,
        due_days_offset=7,
        reminder_enabled=True,
        reminder_days_before_due=(3, 1),
        next_run_at=RUN_AT,
    )
    dispatcher = NotificationDispatcher(sender=StubEmailSender(enabled=True), sleep=lambda _: None)
    FanoutEngine(store=store, dispatcher=dispatcher).sweep(now=RUN_AT)
    return store, schedule.schedule_id


def _sweeper(store: InMemoryScheduleStore, sender: StubEmailSender) -> ReminderSweeper:
    dispatcher = NotificationDispatcher(sender=sender, sleep=lambda _: None)
    return ReminderSweeper(store=store, dispatcher=dispatcher, app_base_url="https://app.example.com")


def test_due_reminders_are_grouped_per_founder_and_marked_sent() -> None:
    store, schedule_id = _seeded_store()
    sender = StubEmailSender(enabled=True)

    summary = _sweeper(store, sender).run(now=FIRST_REMINDER)

    assert summary.processed == 2
    assert summary.sent == 2
    assert summary.cancelled == 0
    assert summary.emails_sent == 1
    assert len(sender.sent) == 1
    assert sender.sent[0].subject == "Reminder: Metrics due in 3 days"
    statuses = {value.scheduled_for: value.status for value in store.list_reminders(schedule_id)}
    assert statuses == {FIRST_REMINDER: "sent", SECOND_REMINDER: "pending"}


def test_nothing_due_sends_nothing() -> None:
    store, _ = _seeded_store()
    sender = StubEmailSender(enabled=True)

    summary = _sweeper(store, sender).run(now=RUN_AT)

    assert summary.processed == 0
    assert sender.sent == []


def test_reminders_for_submitted_requests_are_cancelled() -> None:
    store, schedule_id = _seeded_store()
    for request in store.list_requests("inv-1"):
        store.update_request_status(request.request_id, "submitted")
    sender = StubEmailSender(enabled=True)

    summary = _sweeper(store, sender).run(now=SECOND_REMINDER)

    assert summary.processed == 4
    assert summary.cancelled == 4
    assert summary.sent == 0
    assert sender.sent == []
    reminders = store.list_reminders(schedule_id)
    assert {value.status for value in reminders} == {"cancelled"}
    assert all(value.cancelled_at == SECOND_REMINDER for value in reminders)


def test_undelivered_reminders_stay_pending() -> None:
    store, schedule_id = _seeded_store(founder_email="fail@startup.example")
    sender = StubEmailSender(enabled=True)

    summary = _sweeper(store, sender).run(now=FIRST_REMINDER)

    assert summary.sent == 0
    assert summary.pending == 2
    assert summary.emails_sent == 0
    assert {value.status for value in store.list_reminders(schedule_id)} == {"pending"}


def test_sent_reminders_are_not_sent_again() -> None:
    store, _ = _seeded_store()
    sender = StubEmailSender(enabled=True)
    sweeper = _sweeper(store, sender)

    sweeper.run(now=FIRST_REMINDER)
    summary = sweeper.run(now=FIRST_REMINDER)

    assert summary.processed == 0
    assert len(sender.sent) == 1
