from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterable, Protocol

RequestKey = tuple[str, str, str, date, date]


class StoreError(RuntimeError):
    """Raised when the backing store fails to read or write a batch."""


class ScheduleNotFoundError(KeyError):
    """Raised when an operation references a schedule id that does not exist."""


class TemplateNotFoundError(KeyError):
    """Raised when a schedule references a template id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    email: str | None
    full_name: str | None
    role: str = "founder"


@dataclass(frozen=True)
class CompanyRecord:
    company_id: str
    name: str
    founder_id: str | None = None


@dataclass(frozen=True)
class CompanyContact:
    """A company joined with its founder, normalized to zero or one founder."""

    company_id: str
    company_name: str
    founder: UserRecord | None

    @property
    def reachable(self) -> bool:
        return self.founder is not None and bool((self.founder.email or "").strip())


@dataclass(frozen=True)
class TemplateItemRecord:
    metric_name: str
    period_type: str
    data_type: str = "number"
    sort_order: int = 0


@dataclass(frozen=True)
class TemplateRecord:
    template_id: str
    name: str
    investor_id: str | None
    is_system: bool
    items: tuple[TemplateItemRecord, ...] = ()
    description: str | None = None

    def accessible_to(self, investor_id: str) -> bool:
        return self.is_system or self.investor_id == investor_id


@dataclass(frozen=True)
class MetricDefinitionRecord:
    definition_id: str
    investor_id: str
    name: str
    period_type: str
    data_type: str
    created_at: datetime


@dataclass(frozen=True)
class NewMetricRequest:
    investor_id: str
    company_id: str
    metric_definition_id: str
    period_start: date
    period_end: date
    due_date: date
    schedule_id: str | None

    @property
    def key(self) -> RequestKey:
        return (
            self.investor_id,
            self.company_id,
            self.metric_definition_id,
            self.period_start,
            self.period_end,
        )


@dataclass(frozen=True)
class MetricRequestRecord:
    request_id: str
    investor_id: str
    company_id: str
    metric_definition_id: str
    period_start: date
    period_end: date
    due_date: date
    status: str
    schedule_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class NewReminder:
    metric_request_id: str
    schedule_id: str | None
    scheduled_for: datetime


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    metric_request_id: str
    schedule_id: str | None
    scheduled_for: datetime
    status: str
    sent_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class DueReminder:
    reminder: ReminderRecord
    request: MetricRequestRecord | None
    company: CompanyContact | None
    metric_name: str | None
    investor_name: str | None


@dataclass(frozen=True)
class RunError:
    message: str
    company: str | None = None
    metric: str | None = None

    def to_dict(self) -> dict[str, str]:
        payload = {"message": self.message}
        if self.company is not None:
            payload["company"] = self.company
        if self.metric is not None:
            payload["metric"] = self.metric
        return payload

    @classmethod
    def from_dict(cls, value: dict[str, object]) -> RunError:
        company = value.get("company")
        metric = value.get("metric")
        return cls(
            message=str(value.get("message") or ""),
            company=str(company) if company is not None else None,
            metric=str(metric) if metric is not None else None,
        )


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    schedule_id: str
    trigger_kind: str
    run_at: datetime
    period_start: date
    period_end: date
    requests_created: int
    emails_sent: int
    errors: tuple[RunError, ...]
    status: str
    company_ids: tuple[str, ...]
    created_at: datetime


@dataclass(frozen=True)
class ScheduleRecord:
    schedule_id: str
    investor_id: str
    template_id: str
    name: str
    cadence: str
    day_of_month: int
    company_ids: tuple[str, ...] | None
    include_future_companies: bool
    due_days_offset: int
    reminder_enabled: bool
    reminder_days_before_due: tuple[int, ...]
    is_active: bool
    next_run_at: datetime | None
    last_run_at: datetime | None
    created_at: datetime
    updated_at: datetime


SCHEDULE_MUTABLE_FIELDS = frozenset(
    {
        "name",
        "cadence",
        "day_of_month",
        "company_ids",
        "include_future_companies",
        "due_days_offset",
        "reminder_enabled",
        "reminder_days_before_due",
        "next_run_at",
    }
)


class ScheduleStore(Protocol):
    def reset(self) -> None: ...

    # Portfolio data owned by other workflows.
    def add_user(self, user: UserRecord) -> None: ...

    def add_company(self, company: CompanyRecord) -> None: ...

    def link_portfolio_company(self, investor_id: str, company_id: str) -> None: ...

    def add_template(self, template: TemplateRecord) -> None: ...

    def get_user(self, user_id: str) -> UserRecord | None: ...

    def get_template(self, template_id: str) -> TemplateRecord | None: ...

    def portfolio_company_ids(self, investor_id: str) -> list[str]: ...

    def fetch_company_contacts(self, company_ids: Iterable[str]) -> list[CompanyContact]: ...

    # Schedules.
    def create_schedule(
        self,
        *,
        investor_id: str,
        template_id: str,
        name: str,
        cadence: str,
        day_of_month: int,
        company_ids: tuple[str, ...] | None,
        include_future_companies: bool,
        due_days_offset: int,
        reminder_enabled: bool,
        reminder_days_before_due: tuple[int, ...],
        next_run_at: datetime | None,
    ) -> ScheduleRecord: ...

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None: ...

    def list_schedules(self, investor_id: str) -> list[ScheduleRecord]: ...

    def list_due_schedules(self, now: datetime) -> list[ScheduleRecord]: ...

    def update_schedule(self, schedule_id: str, changes: dict[str, object]) -> ScheduleRecord: ...

    def transition_schedule(
        self,
        schedule_id: str,
        *,
        from_active: bool,
        to_active: bool,
        next_run_at: datetime | None,
    ) -> ScheduleRecord | None: ...

    def record_schedule_run(
        self,
        schedule_id: str,
        *,
        last_run_at: datetime,
        next_run_at: datetime,
    ) -> ScheduleRecord: ...

    # Fan-out data.
    def find_definitions(self, investor_id: str, names: Iterable[str]) -> list[MetricDefinitionRecord]: ...

    def insert_definitions(
        self,
        investor_id: str,
        items: list[TemplateItemRecord],
    ) -> list[MetricDefinitionRecord]: ...

    def find_existing_request_keys(
        self,
        *,
        investor_id: str,
        period_start: date,
        period_end: date,
        definition_ids: Iterable[str],
        company_ids: Iterable[str],
    ) -> set[tuple[str, str]]: ...

    def insert_requests(self, rows: list[NewMetricRequest]) -> list[MetricRequestRecord]: ...

    def update_request_status(self, request_id: str, status: str) -> None: ...

    def insert_reminders(self, rows: list[NewReminder]) -> list[ReminderRecord]: ...

    def list_reminders(self, schedule_id: str) -> list[ReminderRecord]: ...

    def list_due_reminders(self, now: datetime, *, limit: int) -> list[DueReminder]: ...

    def mark_reminders(self, reminder_ids: list[str], *, status: str, at: datetime) -> None: ...

    # Run ledger.
    def append_run(
        self,
        *,
        schedule_id: str,
        trigger_kind: str,
        run_at: datetime,
        period_start: date,
        period_end: date,
        requests_created: int,
        emails_sent: int,
        errors: tuple[RunError, ...],
        status: str,
        company_ids: tuple[str, ...],
    ) -> RunRecord: ...

    def list_runs(self, schedule_id: str) -> list[RunRecord]: ...


@dataclass
class _InMemoryState:
    users: dict[str, UserRecord] = field(default_factory=dict)
    companies: dict[str, CompanyRecord] = field(default_factory=dict)
    portfolio: dict[str, list[str]] = field(default_factory=dict)
    templates: dict[str, TemplateRecord] = field(default_factory=dict)
    schedules: dict[str, ScheduleRecord] = field(default_factory=dict)
    definitions: dict[tuple[str, str, str], MetricDefinitionRecord] = field(default_factory=dict)
    requests: dict[str, MetricRequestRecord] = field(default_factory=dict)
    request_keys: dict[RequestKey, str] = field(default_factory=dict)
    reminders: dict[str, ReminderRecord] = field(default_factory=dict)
    runs: list[RunRecord] = field(default_factory=list)


class InMemoryScheduleStore:
    """Deterministic in-memory store with incremental ids and natural-key indexes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._state = _InMemoryState()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counter):06d}"

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._state = _InMemoryState()

    def add_user(self, user: UserRecord) -> None:
        with self._lock:
            self._state.users[user.user_id] = user

    def add_company(self, company: CompanyRecord) -> None:
        with self._lock:
            self._state.companies[company.company_id] = company

    def link_portfolio_company(self, investor_id: str, company_id: str) -> None:
        with self._lock:
            linked = self._state.portfolio.setdefault(investor_id, [])
            if company_id not in linked:
                linked.append(company_id)

    def add_template(self, template: TemplateRecord) -> None:
        with self._lock:
            items = tuple(sorted(template.items, key=lambda item: item.sort_order))
            self._state.templates[template.template_id] = replace(template, items=items)

    def get_user(self, user_id: str) -> UserRecord | None:
        return self._state.users.get(user_id)

    def get_template(self, template_id: str) -> TemplateRecord | None:
        return self._state.templates.get(template_id)

    def portfolio_company_ids(self, investor_id: str) -> list[str]:
        return list(self._state.portfolio.get(investor_id, []))

    def fetch_company_contacts(self, company_ids: Iterable[str]) -> list[CompanyContact]:
        contacts: list[CompanyContact] = []
        for company_id in dict.fromkeys(company_ids):
            company = self._state.companies.get(company_id)
            if company is None:
                continue
            founder = self._state.users.get(company.founder_id) if company.founder_id else None
            contacts.append(
                CompanyContact(company_id=company.company_id, company_name=company.name, founder=founder)
            )
        return contacts

    def create_schedule(
        self,
        *,
        investor_id: str,
        template_id: str,
        name: str,
        cadence: str,
        day_of_month: int,
        company_ids: tuple[str, ...] | None,
        include_future_companies: bool,
        due_days_offset: int,
        reminder_enabled: bool,
        reminder_days_before_due: tuple[int, ...],
        next_run_at: datetime | None,
    ) -> ScheduleRecord:
        with self._lock:
            now = _now_utc()
            record = ScheduleRecord(
                schedule_id=self._next_id("sch"),
                investor_id=investor_id,
                template_id=template_id,
                name=name,
                cadence=cadence,
                day_of_month=day_of_month,
                company_ids=company_ids,
                include_future_companies=include_future_companies,
                due_days_offset=due_days_offset,
                reminder_enabled=reminder_enabled,
                reminder_days_before_due=reminder_days_before_due,
                is_active=next_run_at is not None,
                next_run_at=next_run_at,
                last_run_at=None,
                created_at=now,
                updated_at=now,
            )
            self._state.schedules[record.schedule_id] = record
            return record

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        return self._state.schedules.get(schedule_id)

    def list_schedules(self, investor_id: str) -> list[ScheduleRecord]:
        rows = [value for value in self._state.schedules.values() if value.investor_id == investor_id]
        return sorted(rows, key=lambda value: (value.created_at, value.schedule_id), reverse=True)

    def list_due_schedules(self, now: datetime) -> list[ScheduleRecord]:
        cutoff = _coerce_utc(now)
        rows = [
            value
            for value in self._state.schedules.values()
            if value.is_active and value.next_run_at is not None and value.next_run_at <= cutoff
        ]
        return sorted(rows, key=lambda value: (value.next_run_at, value.schedule_id))

    def update_schedule(self, schedule_id: str, changes: dict[str, object]) -> ScheduleRecord:
        unknown = set(changes) - SCHEDULE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported schedule fields: {', '.join(sorted(unknown))}")
        with self._lock:
            row = self._state.schedules.get(schedule_id)
            if row is None:
                raise ScheduleNotFoundError(schedule_id)
            if not row.is_active:
                changes = {key: value for key, value in changes.items() if key != "next_run_at"}
            updated = replace(row, **changes, updated_at=_now_utc())  # type: ignore[arg-type]
            self._state.schedules[schedule_id] = updated
            return updated

    def transition_schedule(
        self,
        schedule_id: str,
        *,
        from_active: bool,
        to_active: bool,
        next_run_at: datetime | None,
    ) -> ScheduleRecord | None:
        with self._lock:
            row = self._state.schedules.get(schedule_id)
            if row is None:
                raise ScheduleNotFoundError(schedule_id)
            if row.is_active != from_active:
                return None
            updated = replace(
                row,
                is_active=to_active,
                next_run_at=next_run_at if to_active else None,
                updated_at=_now_utc(),
            )
            self._state.schedules[schedule_id] = updated
            return updated

    def record_schedule_run(
        self,
        schedule_id: str,
        *,
        last_run_at: datetime,
        next_run_at: datetime,
    ) -> ScheduleRecord:
        with self._lock:
            row = self._state.schedules.get(schedule_id)
            if row is None:
                raise ScheduleNotFoundError(schedule_id)
            updated = replace(
                row,
                last_run_at=_coerce_utc(last_run_at),
                next_run_at=_coerce_utc(next_run_at) if row.is_active else None,
                updated_at=_now_utc(),
            )
            self._state.schedules[schedule_id] = updated
            return updated

    def find_definitions(self, investor_id: str, names: Iterable[str]) -> list[MetricDefinitionRecord]:
        wanted = set(names)
        return [
            value
            for (owner, name, _period_type), value in self._state.definitions.items()
            if owner == investor_id and name in wanted
        ]

    def insert_definitions(
        self,
        investor_id: str,
        items: list[TemplateItemRecord],
    ) -> list[MetricDefinitionRecord]:
        created: list[MetricDefinitionRecord] = []
        with self._lock:
            for item in items:
                key = (investor_id, item.metric_name, item.period_type)
                if key in self._state.definitions:
                    continue
                record = MetricDefinitionRecord(
                    definition_id=self._next_id("def"),
                    investor_id=investor_id,
                    name=item.metric_name,
                    period_type=item.period_type,
                    data_type=item.data_type,
                    created_at=_now_utc(),
                )
                self._state.definitions[key] = record
                created.append(record)
        return created

    def find_existing_request_keys(
        self,
        *,
        investor_id: str,
        period_start: date,
        period_end: date,
        definition_ids: Iterable[str],
        company_ids: Iterable[str],
    ) -> set[tuple[str, str]]:
        wanted_definitions = set(definition_ids)
        wanted_companies = set(company_ids)
        return {
            (company_id, definition_id)
            for (owner, company_id, definition_id, start, end) in self._state.request_keys
            if owner == investor_id
            and start == period_start
            and end == period_end
            and company_id in wanted_companies
            and definition_id in wanted_definitions
        }

    def insert_requests(self, rows: list[NewMetricRequest]) -> list[MetricRequestRecord]:
        created: list[MetricRequestRecord] = []
        with self._lock:
            for row in rows:
                if row.key in self._state.request_keys:
                    continue
                record = MetricRequestRecord(
                    request_id=self._next_id("req"),
                    investor_id=row.investor_id,
                    company_id=row.company_id,
                    metric_definition_id=row.metric_definition_id,
                    period_start=row.period_start,
                    period_end=row.period_end,
                    due_date=row.due_date,
                    status="pending",
                    schedule_id=row.schedule_id,
                    created_at=_now_utc(),
                )
                self._state.requests[record.request_id] = record
                self._state.request_keys[row.key] = record.request_id
                created.append(record)
        return created

    def list_requests(self, investor_id: str) -> list[MetricRequestRecord]:
        return [value for value in self._state.requests.values() if value.investor_id == investor_id]

    def update_request_status(self, request_id: str, status: str) -> None:
        with self._lock:
            row = self._state.requests.get(request_id)
            if row is None:
                raise KeyError(request_id)
            self._state.requests[request_id] = replace(row, status=status)

    def insert_reminders(self, rows: list[NewReminder]) -> list[ReminderRecord]:
        created: list[ReminderRecord] = []
        with self._lock:
            for row in rows:
                record = ReminderRecord(
                    reminder_id=self._next_id("rem"),
                    metric_request_id=row.metric_request_id,
                    schedule_id=row.schedule_id,
                    scheduled_for=_coerce_utc(row.scheduled_for),
                    status="pending",
                    sent_at=None,
                    cancelled_at=None,
                    created_at=_now_utc(),
                )
                self._state.reminders[record.reminder_id] = record
                created.append(record)
        return created

    def list_reminders(self, schedule_id: str) -> list[ReminderRecord]:
        return [value for value in self._state.reminders.values() if value.schedule_id == schedule_id]

    def list_due_reminders(self, now: datetime, *, limit: int) -> list[DueReminder]:
        cutoff = _coerce_utc(now)
        pending = sorted(
            (
                value
                for value in self._state.reminders.values()
                if value.status == "pending" and value.scheduled_for <= cutoff
            ),
            key=lambda value: (value.scheduled_for, value.reminder_id),
        )[:limit]
        result: list[DueReminder] = []
        for reminder in pending:
            request = self._state.requests.get(reminder.metric_request_id)
            company: CompanyContact | None = None
            metric_name: str | None = None
            investor_name: str | None = None
            if request is not None:
                contacts = self.fetch_company_contacts([request.company_id])
                company = contacts[0] if contacts else None
                metric_name = next(
                    (
                        value.name
                        for value in self._state.definitions.values()
                        if value.definition_id == request.metric_definition_id
                    ),
                    None,
                )
                investor = self._state.users.get(request.investor_id)
                investor_name = investor.full_name if investor is not None else None
            result.append(
                DueReminder(
                    reminder=reminder,
                    request=request,
                    company=company,
                    metric_name=metric_name,
                    investor_name=investor_name,
                )
            )
        return result

    def mark_reminders(self, reminder_ids: list[str], *, status: str, at: datetime) -> None:
        with self._lock:
            for reminder_id in reminder_ids:
                row = self._state.reminders.get(reminder_id)
                if row is None:
                    continue
                if status == "sent":
                    self._state.reminders[reminder_id] = replace(row, status="sent", sent_at=_coerce_utc(at))
                elif status == "cancelled":
                    self._state.reminders[reminder_id] = replace(
                        row, status="cancelled", cancelled_at=_coerce_utc(at)
                    )
                else:
                    raise ValueError(f"unsupported reminder status: {status}")

    def append_run(
        self,
        *,
        schedule_id: str,
        trigger_kind: str,
        run_at: datetime,
        period_start: date,
        period_end: date,
        requests_created: int,
        emails_sent: int,
        errors: tuple[RunError, ...],
        status: str,
        company_ids: tuple[str, ...],
    ) -> RunRecord:
        with self._lock:
            record = RunRecord(
                run_id=self._next_id("run"),
                schedule_id=schedule_id,
                trigger_kind=trigger_kind,
                run_at=_coerce_utc(run_at),
                period_start=period_start,
                period_end=period_end,
                requests_created=requests_created,
                emails_sent=emails_sent,
                errors=tuple(errors),
                status=status,
                company_ids=tuple(company_ids),
                created_at=_now_utc(),
            )
            self._state.runs.append(record)
            return record

    def list_runs(self, schedule_id: str) -> list[RunRecord]:
        rows = [value for value in self._state.runs if value.schedule_id == schedule_id]
        return sorted(rows, key=lambda value: (value.run_at, value.created_at), reverse=True)
