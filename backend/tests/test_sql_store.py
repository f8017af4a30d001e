from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from metric_scheduler.dispatcher import NotificationDispatcher
from metric_scheduler.fanout import FanoutEngine
from metric_scheduler.notifier import StubEmailSender
from metric_scheduler.store import (
    CompanyRecord,
    InMemoryScheduleStore,
    NewMetricRequest,
    NewReminder,
    RunError,
    ScheduleNotFoundError,
    TemplateItemRecord,
    TemplateRecord,
    UserRecord,
)
from metric_scheduler.store_backends import SqlAlchemyScheduleStore, create_schedule_store

Q1_RUN = datetime(2026, 4, 5, 6, tzinfo=timezone.utc)
Q2_RUN = datetime(2026, 7, 5, 6, tzinfo=timezone.utc)


def _sqlite_store(tmp_path: Path) -> SqlAlchemyScheduleStore:
    return SqlAlchemyScheduleStore(f"sqlite:///{tmp_path / 'scheduler.db'}")


def _seed(store: SqlAlchemyScheduleStore) -> str:
    store.add_user(UserRecord(user_id="inv-1", email="jane@fund.example", full_name="Jane", role="investor"))
    for index in (1, 2):
        store.add_user(UserRecord(user_id=f"founder-{index}", email=f"f{index}@startup.example", full_name=None))
        store.add_company(CompanyRecord(company_id=f"co-{index}", name=f"Company {index}", founder_id=f"founder-{index}"))
        store.link_portfolio_company("inv-1", f"co-{index}")
    store.add_template(
        TemplateRecord(
            template_id="tpl-1",
            name="Quarterly KPIs",
            investor_id="inv-1",
            is_system=False,
            items=(
                TemplateItemRecord(metric_name="Burn Rate", period_type="quarterly", sort_order=2),
                TemplateItemRecord(metric_name="Revenue", period_type="quarterly", sort_order=1),
            ),
        )
    )
    schedule = store.create_schedule(
        investor_id="inv-1",
        template_id="tpl-1",
        name="Quarterly KPIs",
        cadence="quarterly",
        day_of_month=5,
        company_ids=None,
        include_future_companies=True,
        due_days_offset=7,
        reminder_enabled=True,
        reminder_days_before_due=(3, 1),
        next_run_at=Q1_RUN,
    )
    return schedule.schedule_id


def test_schedule_round_trip(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    schedule_id = _seed(store)

    schedule = store.get_schedule(schedule_id)

    assert schedule is not None
    assert schedule.company_ids is None
    assert schedule.reminder_days_before_due == (3, 1)
    assert schedule.next_run_at == Q1_RUN
    assert schedule.is_active is True
    assert [value.schedule_id for value in store.list_due_schedules(Q1_RUN)] == [schedule_id]
    assert store.list_due_schedules(datetime(2026, 4, 5, 5, 59, tzinfo=timezone.utc)) == []
    template = store.get_template("tpl-1")
    assert [item.metric_name for item in template.items] == ["Revenue", "Burn Rate"]


def test_definition_inserts_ignore_existing_keys(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    items = [TemplateItemRecord(metric_name="Revenue", period_type="quarterly")]

    first = store.insert_definitions("inv-1", items)
    second = store.insert_definitions("inv-1", items)

    assert len(first) == 1
    assert second == []
    assert len(store.find_definitions("inv-1", {"Revenue"})) == 1


def test_request_inserts_ignore_natural_key_conflicts(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    definition = store.insert_definitions("inv-1", [TemplateItemRecord(metric_name="Revenue", period_type="quarterly")])[0]
    row = NewMetricRequest(
        investor_id="inv-1",
        company_id="co-1",
        metric_definition_id=definition.definition_id,
        period_start=date(2026, 1, 1),
        period_end=date(2026, 3, 31),
        due_date=date(2026, 4, 12),
        schedule_id=None,
    )

    created = store.insert_requests([row, row])
    again = store.insert_requests([row])

    assert len(created) == 1
    assert again == []
    assert store.find_existing_request_keys(
        investor_id="inv-1",
        period_start=date(2026, 1, 1),
        period_end=date(2026, 3, 31),
        definition_ids=[definition.definition_id],
        company_ids=["co-1", "co-2"],
    ) == {("co-1", definition.definition_id)}


def test_transition_is_compare_and_set(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    schedule_id = _seed(store)

    paused = store.transition_schedule(schedule_id, from_active=True, to_active=False, next_run_at=None)
    repeated = store.transition_schedule(schedule_id, from_active=True, to_active=False, next_run_at=None)

    assert paused is not None
    assert paused.is_active is False
    assert paused.next_run_at is None
    assert repeated is None
    with pytest.raises(ScheduleNotFoundError):
        store.transition_schedule("sch_missing", from_active=True, to_active=False, next_run_at=None)


def test_record_schedule_run_keeps_paused_schedule_null(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    schedule_id = _seed(store)
    store.transition_schedule(schedule_id, from_active=True, to_active=False, next_run_at=None)

    updated = store.record_schedule_run(schedule_id, last_run_at=Q1_RUN, next_run_at=Q2_RUN)

    assert updated.last_run_at == Q1_RUN
    assert updated.next_run_at is None


def test_runs_persist_errors_and_company_ids(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    schedule_id = _seed(store)

    store.append_run(
        schedule_id=schedule_id,
        trigger_kind="sweep",
        run_at=Q1_RUN,
        period_start=date(2026, 1, 1),
        period_end=date(2026, 3, 31),
        requests_created=3,
        emails_sent=2,
        errors=(RunError(message="Failed to create definition", metric="Churn"),),
        status="partial",
        company_ids=("co-1", "co-2"),
    )
    runs = store.list_runs(schedule_id)

    assert len(runs) == 1
    assert runs[0].errors == (RunError(message="Failed to create definition", metric="Churn"),)
    assert runs[0].company_ids == ("co-1", "co-2")
    assert runs[0].run_at == Q1_RUN


def test_due_reminders_join_request_company_and_metric(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    schedule_id = _seed(store)
    definition = store.insert_definitions("inv-1", [TemplateItemRecord(metric_name="Revenue", period_type="quarterly")])[0]
    request = store.insert_requests(
        [
            NewMetricRequest(
                investor_id="inv-1",
                company_id="co-1",
                metric_definition_id=definition.definition_id,
                period_start=date(2026, 1, 1),
                period_end=date(2026, 3, 31),
                due_date=date(2026, 4, 12),
                schedule_id=schedule_id,
            )
        ]
    )[0]
    store.insert_reminders(
        [
            NewReminder(
                metric_request_id=request.request_id,
                schedule_id=schedule_id,
                scheduled_for=datetime(2026, 4, 9, 9, tzinfo=timezone.utc),
            )
        ]
    )

    due = store.list_due_reminders(datetime(2026, 4, 9, 9, tzinfo=timezone.utc), limit=10)

    assert len(due) == 1
    assert due[0].metric_name == "Revenue"
    assert due[0].company is not None
    assert due[0].company.founder.email == "f1@startup.example"
    assert due[0].investor_name == "Jane"

    store.mark_reminders([due[0].reminder.reminder_id], status="sent", at=datetime(2026, 4, 9, 9, tzinfo=timezone.utc))
    assert store.list_due_reminders(datetime(2026, 4, 10, tzinfo=timezone.utc), limit=10) == []


def test_engine_is_idempotent_on_sql_store(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    schedule_id = _seed(store)
    dispatcher = NotificationDispatcher(sender=StubEmailSender(enabled=True), sleep=lambda _: None)
    engine = FanoutEngine(store=store, dispatcher=dispatcher)

    first = engine.sweep(now=Q1_RUN)
    second = engine.run(store.get_schedule(schedule_id), now=Q1_RUN, trigger_kind="manual")

    assert first.results[0].requests_created == 4
    assert first.results[0].emails_sent == 2
    assert first.results[0].schedule.next_run_at == Q2_RUN
    assert second.requests_created == 0
    assert second.status == "success"
    assert len(store.list_reminders(schedule_id)) == 8
    assert len(store.list_runs(schedule_id)) == 2


def test_store_factory() -> None:
    assert isinstance(create_schedule_store(backend="inmemory", database_url=""), InMemoryScheduleStore)
    with pytest.raises(RuntimeError):
        create_schedule_store(backend="postgres", database_url="")
    with pytest.raises(RuntimeError):
        create_schedule_store(backend="mongo", database_url="")
