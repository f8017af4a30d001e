from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Literal

from .definitions import resolve_definitions
from .dispatcher import NotificationDispatcher, group_by_founder, render_request_email
from .ledger import RunLedger, TriggerKind
from .periods import (
    due_date_for,
    format_reporting_period,
    is_schedule_due,
    reminder_dates,
    reporting_period,
)
from .store import (
    CompanyContact,
    MetricRequestRecord,
    NewMetricRequest,
    NewReminder,
    RunError,
    RunRecord,
    ScheduleRecord,
    ScheduleStore,
    StoreError,
)

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["success", "partial", "failed", "skipped"]

SKIP_NO_COMPANIES = "no_companies"
SKIP_NO_TEMPLATE = "template_missing"
SKIP_NO_TEMPLATE_ITEMS = "template_empty"
SKIP_NOT_DUE = "not_due"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FanoutResult:
    schedule_id: str
    status: OutcomeStatus
    requests_created: int = 0
    emails_sent: int = 0
    errors: tuple[RunError, ...] = ()
    run: RunRecord | None = None
    schedule: ScheduleRecord | None = None
    skip_reason: str | None = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


@dataclass
class SweepSummary:
    run_at: datetime
    results: list[FanoutResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)


class FanoutEngine:
    """Expand a due schedule into metric requests, reminders and founder emails.

    Timer sweeps and manual runs share :meth:`run`; only the due-gate and the
    trigger kind recorded in the ledger differ.
    """

    def __init__(
        self,
        *,
        store: ScheduleStore,
        dispatcher: NotificationDispatcher,
        app_base_url: str = "http://localhost:3000",
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._ledger = RunLedger(store)
        self._app_base_url = app_base_url

    def sweep(self, *, now: datetime | None = None) -> SweepSummary:
        run_at = now or _now_utc()
        summary = SweepSummary(run_at=run_at)
        due = self._store.list_due_schedules(run_at)
        logger.info("schedule sweep started due=%d", len(due))
        for schedule in due:
            try:
                result = self.run(schedule, now=run_at, trigger_kind="sweep")
            except Exception as exc:
                logger.exception("schedule run failed schedule_id=%s", schedule.schedule_id)
                result = FanoutResult(
                    schedule_id=schedule.schedule_id,
                    status="failed",
                    errors=(RunError(message=str(exc) or exc.__class__.__name__),),
                    schedule=schedule,
                )
            summary.results.append(result)
        logger.info(
            "schedule sweep finished processed=%d requests_created=%d emails_sent=%d",
            summary.processed,
            sum(value.requests_created for value in summary.results),
            sum(value.emails_sent for value in summary.results),
        )
        return summary

    def run(self, schedule: ScheduleRecord, *, now: datetime, trigger_kind: TriggerKind) -> FanoutResult:
        if trigger_kind == "sweep" and not (schedule.is_active and is_schedule_due(schedule.next_run_at, now)):
            return self._skip(schedule, SKIP_NOT_DUE)

        company_ids = list(schedule.company_ids) if schedule.company_ids else self._store.portfolio_company_ids(
            schedule.investor_id
        )
        if not company_ids:
            return self._skip(schedule, SKIP_NO_COMPANIES)

        template = self._store.get_template(schedule.template_id)
        if template is None:
            return self._skip(schedule, SKIP_NO_TEMPLATE)
        if not template.items:
            return self._skip(schedule, SKIP_NO_TEMPLATE_ITEMS)

        cadence = schedule.cadence
        period_start, period_end = reporting_period(cadence, now)  # type: ignore[arg-type]
        due_date = due_date_for(now, schedule.due_days_offset)
        errors: list[RunError] = []

        resolution = resolve_definitions(store=self._store, investor_id=schedule.investor_id, items=list(template.items))
        errors.extend(resolution.errors)
        metric_names: dict[str, str] = {}
        for item in template.items:
            definition_id = resolution.id_for(item)
            if definition_id is not None:
                metric_names.setdefault(definition_id, item.metric_name)
        definition_ids = list(metric_names)

        contacts = self._store.fetch_company_contacts(company_ids)
        eligible = [contact for contact in contacts if contact.reachable]
        eligible_ids = [contact.company_id for contact in eligible]
        contacts_by_id = {contact.company_id: contact for contact in eligible}

        try:
            existing = self._store.find_existing_request_keys(
                investor_id=schedule.investor_id,
                period_start=period_start,
                period_end=period_end,
                definition_ids=definition_ids,
                company_ids=eligible_ids,
            )
        except StoreError as exc:
            # Inserts below still skip natural-key conflicts.
            logger.warning("existing request lookup failed schedule_id=%s: %s", schedule.schedule_id, exc)
            errors.append(RunError(message=f"Failed to check existing requests: {exc}"))
            existing = set()

        rows = [
            NewMetricRequest(
                investor_id=schedule.investor_id,
                company_id=company_id,
                metric_definition_id=definition_id,
                period_start=period_start,
                period_end=period_end,
                due_date=due_date,
                schedule_id=schedule.schedule_id,
            )
            for company_id in eligible_ids
            for definition_id in definition_ids
            if (company_id, definition_id) not in existing
        ]

        created: list[MetricRequestRecord] = []
        if rows:
            try:
                created = self._store.insert_requests(rows)
            except StoreError as exc:
                logger.warning(
                    "request insert failed schedule_id=%s rows=%d: %s",
                    schedule.schedule_id,
                    len(rows),
                    exc,
                )
                errors.append(RunError(message=f"Failed to create metric requests: {exc}"))

        if schedule.reminder_enabled and created and schedule.reminder_days_before_due:
            instants = reminder_dates(due_date, list(schedule.reminder_days_before_due))
            reminders = [
                NewReminder(
                    metric_request_id=request.request_id,
                    schedule_id=schedule.schedule_id,
                    scheduled_for=instant,
                )
                for request in created
                for instant in instants
            ]
            try:
                self._store.insert_reminders(reminders)
            except StoreError as exc:
                logger.warning("reminder insert failed schedule_id=%s: %s", schedule.schedule_id, exc)
                errors.append(RunError(message=f"Failed to schedule reminders: {exc}"))

        emails_sent = 0
        if created:
            emails_sent = self._notify(schedule, created, contacts_by_id, metric_names, now=now, due_date=due_date)

        entry = self._ledger.record(
            schedule,
            trigger_kind=trigger_kind,
            now=now,
            period_start=period_start,
            period_end=period_end,
            requests_created=len(created),
            emails_sent=emails_sent,
            errors=errors,
            company_ids=company_ids,
        )
        return FanoutResult(
            schedule_id=schedule.schedule_id,
            status=entry.run.status,  # type: ignore[arg-type]
            requests_created=len(created),
            emails_sent=emails_sent,
            errors=tuple(errors),
            run=entry.run,
            schedule=entry.schedule,
        )

    def _notify(
        self,
        schedule: ScheduleRecord,
        created: list[MetricRequestRecord],
        contacts_by_id: dict[str, CompanyContact],
        metric_names: dict[str, str],
        *,
        now: datetime,
        due_date: date,
    ) -> int:
        notices = group_by_founder(
            (contacts_by_id[request.company_id], metric_names[request.metric_definition_id], request.request_id)
            for request in created
            if request.company_id in contacts_by_id and request.metric_definition_id in metric_names
        )
        if not notices:
            return 0
        investor = self._store.get_user(schedule.investor_id)
        investor_name = (investor.full_name if investor is not None else None) or "An investor"
        period_start, period_end = reporting_period(schedule.cadence, now)  # type: ignore[arg-type]
        period_label = format_reporting_period(schedule.cadence, period_start)  # type: ignore[arg-type]
        messages = [
            render_request_email(
                notice,
                investor_name=investor_name,
                period_label=period_label,
                period_end=period_end,
                due_date=due_date,
                app_base_url=self._app_base_url,
            )
            for notice in notices
        ]
        outcome = self._dispatcher.dispatch(messages)
        if outcome.dropped_batches:
            logger.warning(
                "founder notifications dropped schedule_id=%s batches=%d",
                schedule.schedule_id,
                outcome.dropped_batches,
            )
        return outcome.emails_sent

    def _skip(self, schedule: ScheduleRecord, reason: str) -> FanoutResult:
        logger.warning("schedule skipped schedule_id=%s reason=%s", schedule.schedule_id, reason)
        return FanoutResult(
            schedule_id=schedule.schedule_id,
            status="skipped",
            schedule=schedule,
            skip_reason=reason,
        )
