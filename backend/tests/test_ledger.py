from __future__ import annotations

from datetime import date, datetime, timezone

from metric_scheduler.ledger import RunLedger, derive_run_status
from metric_scheduler.store import InMemoryScheduleStore, RunError


def _create_schedule(store: InMemoryScheduleStore, *, active: bool = True):
    return store.create_schedule(
        investor_id="inv-1",
        template_id="tpl-1",
        name="Quarterly KPIs",
        cadence="quarterly",
        day_of_month=5,
        company_ids=None,
        include_future_companies=False,
        due_days_offset=7,
        reminder_enabled=True,
        reminder_days_before_due=(3, 1),
        next_run_at=datetime(2026, 4, 5, 6, tzinfo=timezone.utc) if active else None,
    )


def test_derive_run_status() -> None:
    assert derive_run_status(0, 0) == "success"
    assert derive_run_status(5, 2) == "partial"
    assert derive_run_status(0, 3) == "failed"
    assert derive_run_status(4, 0) == "success"


def test_record_appends_run_and_advances_schedule() -> None:
    store = InMemoryScheduleStore()
    schedule = _create_schedule(store)
    now = datetime(2026, 4, 5, 6, tzinfo=timezone.utc)

    entry = RunLedger(store).record(
        schedule,
        trigger_kind="sweep",
        now=now,
        period_start=date(2026, 1, 1),
        period_end=date(2026, 3, 31),
        requests_created=3,
        emails_sent=1,
        errors=[RunError(message="Failed to create definition", metric="Churn")],
        company_ids=["co-1", "co-2"],
    )

    assert entry.run.status == "partial"
    assert entry.run.trigger_kind == "sweep"
    assert entry.run.company_ids == ("co-1", "co-2")
    assert entry.run.errors[0].to_dict() == {"message": "Failed to create definition", "metric": "Churn"}
    assert entry.schedule.last_run_at == now
    assert entry.schedule.next_run_at == datetime(2026, 7, 5, 6, tzinfo=timezone.utc)
    assert store.list_runs(schedule.schedule_id) == [entry.run]


def test_record_on_paused_schedule_keeps_it_paused() -> None:
    store = InMemoryScheduleStore()
    schedule = _create_schedule(store, active=False)
    now = datetime(2026, 4, 20, 12, tzinfo=timezone.utc)

    entry = RunLedger(store).record(
        schedule,
        trigger_kind="manual",
        now=now,
        period_start=date(2026, 1, 1),
        period_end=date(2026, 3, 31),
        requests_created=0,
        emails_sent=0,
        errors=[],
        company_ids=[],
    )

    assert entry.run.status == "success"
    assert entry.schedule.is_active is False
    assert entry.schedule.next_run_at is None
    assert entry.schedule.last_run_at == now


def test_runs_are_listed_newest_first() -> None:
    store = InMemoryScheduleStore()
    schedule = _create_schedule(store)
    ledger = RunLedger(store)
    for day in (5, 6, 7):
        ledger.record(
            schedule,
            trigger_kind="manual",
            now=datetime(2026, 4, day, 6, tzinfo=timezone.utc),
            period_start=date(2026, 1, 1),
            period_end=date(2026, 3, 31),
            requests_created=0,
            emails_sent=0,
            errors=[],
            company_ids=[],
        )

    runs = store.list_runs(schedule.schedule_id)
    assert [value.run_at.day for value in runs] == [7, 6, 5]


def test_run_error_round_trips_through_dict() -> None:
    error = RunError(message="boom", company="Acme")
    assert RunError.from_dict(error.to_dict()) == error
