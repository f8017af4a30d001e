from __future__ import annotations

import json
import logging
import secrets
from datetime import date, datetime, timezone
from typing import Iterable

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .store import (
    SCHEDULE_MUTABLE_FIELDS,
    CompanyContact,
    CompanyRecord,
    DueReminder,
    InMemoryScheduleStore,
    MetricDefinitionRecord,
    MetricRequestRecord,
    NewMetricRequest,
    NewReminder,
    ReminderRecord,
    RunError,
    RunRecord,
    ScheduleNotFoundError,
    ScheduleRecord,
    ScheduleStore,
    StoreError,
    TemplateItemRecord,
    TemplateRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)


class SchedulerBase(DeclarativeBase):
    pass


class _UserRow(SchedulerBase):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="founder")


class _CompanyRow(SchedulerBase):
    __tablename__ = "companies"

    company_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    founder_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("users.user_id"), nullable=True)


class _PortfolioLinkRow(SchedulerBase):
    __tablename__ = "investor_company_relationships"

    investor_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.user_id"), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.company_id"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _TemplateRow(SchedulerBase):
    __tablename__ = "metric_templates"

    template_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    investor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class _TemplateItemRow(SchedulerBase):
    __tablename__ = "metric_template_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("metric_templates.template_id"), nullable=False, index=True
    )
    metric_name: Mapped[str] = mapped_column(String(256), nullable=False)
    period_type: Mapped[str] = mapped_column(String(32), nullable=False)
    data_type: Mapped[str] = mapped_column(String(32), nullable=False, default="number")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class _ScheduleRow(SchedulerBase):
    __tablename__ = "metric_request_schedules"

    schedule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    investor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(String(64), ForeignKey("metric_templates.template_id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    cadence: Mapped[str] = mapped_column(String(16), nullable=False)
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False)
    company_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    include_future_companies: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    due_days_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    reminder_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reminder_days_json: Mapped[str] = mapped_column(Text, nullable=False, default="[3,1]")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DefinitionRow(SchedulerBase):
    __tablename__ = "metric_definitions"
    __table_args__ = (UniqueConstraint("investor_id", "name", "period_type", name="uq_metric_definitions_key"),)

    definition_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    investor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    period_type: Mapped[str] = mapped_column(String(32), nullable=False)
    data_type: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _RequestRow(SchedulerBase):
    __tablename__ = "metric_requests"
    __table_args__ = (
        UniqueConstraint(
            "investor_id",
            "company_id",
            "metric_definition_id",
            "period_start",
            "period_end",
            name="uq_metric_requests_key",
        ),
    )

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    investor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metric_definition_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("metric_definitions.definition_id"), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    schedule_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReminderRow(SchedulerBase):
    __tablename__ = "metric_request_reminders"

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    metric_request_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("metric_requests.request_id"), nullable=False, index=True
    )
    schedule_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _RunRow(SchedulerBase):
    __tablename__ = "scheduled_request_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    schedule_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("metric_request_schedules.schedule_id"), nullable=False, index=True
    )
    trigger_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    requests_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    emails_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    company_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def _dump_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _user_record(row: _UserRow) -> UserRecord:
    return UserRecord(user_id=row.user_id, email=row.email, full_name=row.full_name, role=row.role)


def _definition_record(row: _DefinitionRow) -> MetricDefinitionRecord:
    return MetricDefinitionRecord(
        definition_id=row.definition_id,
        investor_id=row.investor_id,
        name=row.name,
        period_type=row.period_type,
        data_type=row.data_type,
        created_at=_coerce_utc(row.created_at),
    )


def _request_record(row: _RequestRow) -> MetricRequestRecord:
    return MetricRequestRecord(
        request_id=row.request_id,
        investor_id=row.investor_id,
        company_id=row.company_id,
        metric_definition_id=row.metric_definition_id,
        period_start=row.period_start,
        period_end=row.period_end,
        due_date=row.due_date,
        status=row.status,
        schedule_id=row.schedule_id,
        created_at=_coerce_utc(row.created_at),
    )


def _reminder_record(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        metric_request_id=row.metric_request_id,
        schedule_id=row.schedule_id,
        scheduled_for=_coerce_utc(row.scheduled_for),
        status=row.status,
        sent_at=_optional_utc(row.sent_at),
        cancelled_at=_optional_utc(row.cancelled_at),
        created_at=_coerce_utc(row.created_at),
    )


def _schedule_record(row: _ScheduleRow) -> ScheduleRecord:
    company_ids = json.loads(row.company_ids_json) if row.company_ids_json is not None else None
    return ScheduleRecord(
        schedule_id=row.schedule_id,
        investor_id=row.investor_id,
        template_id=row.template_id,
        name=row.name,
        cadence=row.cadence,
        day_of_month=row.day_of_month,
        company_ids=tuple(company_ids) if company_ids is not None else None,
        include_future_companies=row.include_future_companies,
        due_days_offset=row.due_days_offset,
        reminder_enabled=row.reminder_enabled,
        reminder_days_before_due=tuple(int(value) for value in json.loads(row.reminder_days_json)),
        is_active=row.is_active,
        next_run_at=_optional_utc(row.next_run_at),
        last_run_at=_optional_utc(row.last_run_at),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _run_record(row: _RunRow) -> RunRecord:
    return RunRecord(
        run_id=row.run_id,
        schedule_id=row.schedule_id,
        trigger_kind=row.trigger_kind,
        run_at=_coerce_utc(row.run_at),
        period_start=row.period_start,
        period_end=row.period_end,
        requests_created=row.requests_created,
        emails_sent=row.emails_sent,
        errors=tuple(RunError.from_dict(value) for value in json.loads(row.errors_json)),
        status=row.status,
        company_ids=tuple(json.loads(row.company_ids_json)),
        created_at=_coerce_utc(row.created_at),
    )


def _schedule_column_values(changes: dict[str, object]) -> dict[str, object]:
    values: dict[str, object] = {}
    for key, value in changes.items():
        if key == "company_ids":
            values["company_ids_json"] = _dump_json(list(value)) if value is not None else None  # type: ignore[arg-type]
        elif key == "reminder_days_before_due":
            values["reminder_days_json"] = _dump_json(list(value))  # type: ignore[arg-type]
        elif key == "next_run_at":
            values["next_run_at"] = _optional_utc(value)  # type: ignore[arg-type]
        else:
            values[key] = value
    return values


class SqlAlchemyScheduleStore:
    """Relational store; natural-key uniqueness is enforced by table constraints."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for SCHEDULE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SchedulerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _insert_ignoring_conflicts(self, session, model, rows: list[dict[str, object]], index_elements: list[str]) -> None:
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            statement = postgresql.insert(model)
        elif dialect == "sqlite":
            statement = sqlite.insert(model)
        else:
            raise StoreError(f"unsupported database dialect for conflict-free inserts: {dialect}")
        session.execute(statement.values(rows).on_conflict_do_nothing(index_elements=index_elements))

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                for model in (
                    _RunRow,
                    _ReminderRow,
                    _RequestRow,
                    _DefinitionRow,
                    _ScheduleRow,
                    _TemplateItemRow,
                    _TemplateRow,
                    _PortfolioLinkRow,
                    _CompanyRow,
                    _UserRow,
                ):
                    session.execute(delete(model))

    def add_user(self, user: UserRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _UserRow(user_id=user.user_id, email=user.email, full_name=user.full_name, role=user.role)
                )

    def add_company(self, company: CompanyRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _CompanyRow(company_id=company.company_id, name=company.name, founder_id=company.founder_id)
                )

    def link_portfolio_company(self, investor_id: str, company_id: str) -> None:
        with self._session() as session:
            with session.begin():
                if session.get(_PortfolioLinkRow, (investor_id, company_id)) is not None:
                    return
                session.add(_PortfolioLinkRow(investor_id=investor_id, company_id=company_id, created_at=_now_utc()))

    def add_template(self, template: TemplateRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_TemplateItemRow).where(_TemplateItemRow.template_id == template.template_id))
                session.merge(
                    _TemplateRow(
                        template_id=template.template_id,
                        name=template.name,
                        investor_id=template.investor_id,
                        is_system=template.is_system,
                        description=template.description,
                    )
                )
                session.flush()
                for item in template.items:
                    session.add(
                        _TemplateItemRow(
                            template_id=template.template_id,
                            metric_name=item.metric_name,
                            period_type=item.period_type,
                            data_type=item.data_type,
                            sort_order=item.sort_order,
                        )
                    )

    def get_user(self, user_id: str) -> UserRecord | None:
        with self._session() as session:
            row = session.get(_UserRow, user_id)
            return _user_record(row) if row is not None else None

    def get_template(self, template_id: str) -> TemplateRecord | None:
        with self._session() as session:
            row = session.get(_TemplateRow, template_id)
            if row is None:
                return None
            items = session.execute(
                select(_TemplateItemRow)
                .where(_TemplateItemRow.template_id == template_id)
                .order_by(_TemplateItemRow.sort_order.asc(), _TemplateItemRow.item_id.asc())
            ).scalars()
            return TemplateRecord(
                template_id=row.template_id,
                name=row.name,
                investor_id=row.investor_id,
                is_system=row.is_system,
                description=row.description,
                items=tuple(
                    TemplateItemRecord(
                        metric_name=item.metric_name,
                        period_type=item.period_type,
                        data_type=item.data_type,
                        sort_order=item.sort_order,
                    )
                    for item in items
                ),
            )

    def portfolio_company_ids(self, investor_id: str) -> list[str]:
        with self._session() as session:
            rows = session.execute(
                select(_PortfolioLinkRow.company_id)
                .where(_PortfolioLinkRow.investor_id == investor_id)
                .order_by(_PortfolioLinkRow.created_at.asc(), _PortfolioLinkRow.company_id.asc())
            ).scalars()
            return list(rows)

    def fetch_company_contacts(self, company_ids: Iterable[str]) -> list[CompanyContact]:
        wanted = list(dict.fromkeys(company_ids))
        if not wanted:
            return []
        with self._session() as session:
            rows = session.execute(
                select(_CompanyRow, _UserRow)
                .outerjoin(_UserRow, _CompanyRow.founder_id == _UserRow.user_id)
                .where(_CompanyRow.company_id.in_(wanted))
            ).all()
        by_id = {
            company.company_id: CompanyContact(
                company_id=company.company_id,
                company_name=company.name,
                founder=_user_record(founder) if founder is not None else None,
            )
            for company, founder in rows
        }
        return [by_id[value] for value in wanted if value in by_id]

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
        now = _now_utc()
        row = _ScheduleRow(
            schedule_id=_new_id("sch"),
            investor_id=investor_id,
            template_id=template_id,
            name=name,
            cadence=cadence,
            day_of_month=day_of_month,
            company_ids_json=_dump_json(list(company_ids)) if company_ids is not None else None,
            include_future_companies=include_future_companies,
            due_days_offset=due_days_offset,
            reminder_enabled=reminder_enabled,
            reminder_days_json=_dump_json(list(reminder_days_before_due)),
            is_active=next_run_at is not None,
            next_run_at=_optional_utc(next_run_at),
            last_run_at=None,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return _schedule_record(row)

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        with self._session() as session:
            row = session.get(_ScheduleRow, schedule_id)
            return _schedule_record(row) if row is not None else None

    def list_schedules(self, investor_id: str) -> list[ScheduleRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduleRow)
                .where(_ScheduleRow.investor_id == investor_id)
                .order_by(_ScheduleRow.created_at.desc(), _ScheduleRow.schedule_id.desc())
            ).scalars()
            return [_schedule_record(row) for row in rows]

    def list_due_schedules(self, now: datetime) -> list[ScheduleRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduleRow)
                .where(
                    _ScheduleRow.is_active.is_(True),
                    _ScheduleRow.next_run_at.is_not(None),
                    _ScheduleRow.next_run_at <= _coerce_utc(now),
                )
                .order_by(_ScheduleRow.next_run_at.asc(), _ScheduleRow.schedule_id.asc())
            ).scalars()
            return [_schedule_record(row) for row in rows]

    def update_schedule(self, schedule_id: str, changes: dict[str, object]) -> ScheduleRecord:
        unknown = set(changes) - SCHEDULE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported schedule fields: {', '.join(sorted(unknown))}")
        with self._session() as session:
            with session.begin():
                row = session.get(_ScheduleRow, schedule_id)
                if row is None:
                    raise ScheduleNotFoundError(schedule_id)
                for key, value in _schedule_column_values(changes).items():
                    if key == "next_run_at" and not row.is_active:
                        continue
                    setattr(row, key, value)
                row.updated_at = _now_utc()
            return _schedule_record(row)

    def transition_schedule(
        self,
        schedule_id: str,
        *,
        from_active: bool,
        to_active: bool,
        next_run_at: datetime | None,
    ) -> ScheduleRecord | None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ScheduleRow)
                    .where(_ScheduleRow.schedule_id == schedule_id, _ScheduleRow.is_active.is_(from_active))
                    .values(
                        is_active=to_active,
                        next_run_at=_optional_utc(next_run_at) if to_active else None,
                        updated_at=_now_utc(),
                    )
                )
                changed = result.rowcount > 0
        record = self.get_schedule(schedule_id)
        if record is None:
            raise ScheduleNotFoundError(schedule_id)
        return record if changed else None

    def record_schedule_run(
        self,
        schedule_id: str,
        *,
        last_run_at: datetime,
        next_run_at: datetime,
    ) -> ScheduleRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ScheduleRow)
                    .where(_ScheduleRow.schedule_id == schedule_id)
                    .values(last_run_at=_coerce_utc(last_run_at), updated_at=now)
                )
                if result.rowcount == 0:
                    raise ScheduleNotFoundError(schedule_id)
                # Paused schedules keep next_run_at null.
                session.execute(
                    update(_ScheduleRow)
                    .where(_ScheduleRow.schedule_id == schedule_id, _ScheduleRow.is_active.is_(True))
                    .values(next_run_at=_coerce_utc(next_run_at))
                )
        record = self.get_schedule(schedule_id)
        if record is None:
            raise ScheduleNotFoundError(schedule_id)
        return record

    def find_definitions(self, investor_id: str, names: Iterable[str]) -> list[MetricDefinitionRecord]:
        wanted = sorted(set(names))
        if not wanted:
            return []
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_DefinitionRow).where(
                        _DefinitionRow.investor_id == investor_id,
                        _DefinitionRow.name.in_(wanted),
                    )
                ).scalars()
                return [_definition_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"definition lookup failed: {exc}") from exc

    def insert_definitions(
        self,
        investor_id: str,
        items: list[TemplateItemRecord],
    ) -> list[MetricDefinitionRecord]:
        if not items:
            return []
        now = _now_utc()
        rows = [
            {
                "definition_id": _new_id("def"),
                "investor_id": investor_id,
                "name": item.metric_name,
                "period_type": item.period_type,
                "data_type": item.data_type,
                "created_at": now,
            }
            for item in items
        ]
        ids = [str(row["definition_id"]) for row in rows]
        try:
            with self._session() as session:
                with session.begin():
                    self._insert_ignoring_conflicts(
                        session,
                        _DefinitionRow,
                        rows,
                        ["investor_id", "name", "period_type"],
                    )
                created = session.execute(
                    select(_DefinitionRow).where(_DefinitionRow.definition_id.in_(ids))
                ).scalars()
                return [_definition_record(row) for row in created]
        except SQLAlchemyError as exc:
            raise StoreError(f"definition insert failed: {exc}") from exc

    def find_existing_request_keys(
        self,
        *,
        investor_id: str,
        period_start: date,
        period_end: date,
        definition_ids: Iterable[str],
        company_ids: Iterable[str],
    ) -> set[tuple[str, str]]:
        definitions = sorted(set(definition_ids))
        companies = sorted(set(company_ids))
        if not definitions or not companies:
            return set()
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_RequestRow.company_id, _RequestRow.metric_definition_id).where(
                        _RequestRow.investor_id == investor_id,
                        _RequestRow.period_start == period_start,
                        _RequestRow.period_end == period_end,
                        _RequestRow.metric_definition_id.in_(definitions),
                        _RequestRow.company_id.in_(companies),
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"existing request lookup failed: {exc}") from exc
        return {(company_id, definition_id) for company_id, definition_id in rows}

    def insert_requests(self, rows: list[NewMetricRequest]) -> list[MetricRequestRecord]:
        if not rows:
            return []
        now = _now_utc()
        values = [
            {
                "request_id": _new_id("req"),
                "investor_id": row.investor_id,
                "company_id": row.company_id,
                "metric_definition_id": row.metric_definition_id,
                "period_start": row.period_start,
                "period_end": row.period_end,
                "due_date": row.due_date,
                "status": "pending",
                "schedule_id": row.schedule_id,
                "created_at": now,
            }
            for row in rows
        ]
        ids = [str(value["request_id"]) for value in values]
        try:
            with self._session() as session:
                with session.begin():
                    self._insert_ignoring_conflicts(
                        session,
                        _RequestRow,
                        values,
                        ["investor_id", "company_id", "metric_definition_id", "period_start", "period_end"],
                    )
                created = session.execute(select(_RequestRow).where(_RequestRow.request_id.in_(ids))).scalars()
                return [_request_record(row) for row in created]
        except SQLAlchemyError as exc:
            raise StoreError(f"request insert failed: {exc}") from exc

    def update_request_status(self, request_id: str, status: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_RequestRow, request_id)
                if row is None:
                    raise KeyError(request_id)
                row.status = status

    def insert_reminders(self, rows: list[NewReminder]) -> list[ReminderRecord]:
        if not rows:
            return []
        now = _now_utc()
        created = [
            _ReminderRow(
                reminder_id=_new_id("rem"),
                metric_request_id=row.metric_request_id,
                schedule_id=row.schedule_id,
                scheduled_for=_coerce_utc(row.scheduled_for),
                status="pending",
                sent_at=None,
                cancelled_at=None,
                created_at=now,
            )
            for row in rows
        ]
        try:
            with self._session() as session:
                with session.begin():
                    session.add_all(created)
        except SQLAlchemyError as exc:
            raise StoreError(f"reminder insert failed: {exc}") from exc
        return [_reminder_record(row) for row in created]

    def list_reminders(self, schedule_id: str) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.schedule_id == schedule_id)
                .order_by(_ReminderRow.scheduled_for.asc(), _ReminderRow.reminder_id.asc())
            ).scalars()
            return [_reminder_record(row) for row in rows]

    def list_due_reminders(self, now: datetime, *, limit: int) -> list[DueReminder]:
        with self._session() as session:
            reminders = [
                _reminder_record(row)
                for row in session.execute(
                    select(_ReminderRow)
                    .where(_ReminderRow.status == "pending", _ReminderRow.scheduled_for <= _coerce_utc(now))
                    .order_by(_ReminderRow.scheduled_for.asc(), _ReminderRow.reminder_id.asc())
                    .limit(limit)
                ).scalars()
            ]
            request_ids = sorted({value.metric_request_id for value in reminders})
            requests = {
                row.request_id: _request_record(row)
                for row in session.execute(
                    select(_RequestRow).where(_RequestRow.request_id.in_(request_ids))
                ).scalars()
            } if request_ids else {}
            definition_ids = sorted({value.metric_definition_id for value in requests.values()})
            metric_names = {
                definition_id: name
                for definition_id, name in session.execute(
                    select(_DefinitionRow.definition_id, _DefinitionRow.name).where(
                        _DefinitionRow.definition_id.in_(definition_ids)
                    )
                ).all()
            } if definition_ids else {}
            investor_ids = sorted({value.investor_id for value in requests.values()})
            investor_names = {
                user_id: full_name
                for user_id, full_name in session.execute(
                    select(_UserRow.user_id, _UserRow.full_name).where(_UserRow.user_id.in_(investor_ids))
                ).all()
            } if investor_ids else {}
        contacts = {
            value.company_id: value
            for value in self.fetch_company_contacts(value.company_id for value in requests.values())
        }
        result: list[DueReminder] = []
        for reminder in reminders:
            request = requests.get(reminder.metric_request_id)
            result.append(
                DueReminder(
                    reminder=reminder,
                    request=request,
                    company=contacts.get(request.company_id) if request is not None else None,
                    metric_name=metric_names.get(request.metric_definition_id) if request is not None else None,
                    investor_name=investor_names.get(request.investor_id) if request is not None else None,
                )
            )
        return result

    def mark_reminders(self, reminder_ids: list[str], *, status: str, at: datetime) -> None:
        if not reminder_ids:
            return
        if status == "sent":
            values: dict[str, object] = {"status": "sent", "sent_at": _coerce_utc(at)}
        elif status == "cancelled":
            values = {"status": "cancelled", "cancelled_at": _coerce_utc(at)}
        else:
            raise ValueError(f"unsupported reminder status: {status}")
        with self._session() as session:
            with session.begin():
                session.execute(
                    update(_ReminderRow).where(_ReminderRow.reminder_id.in_(reminder_ids)).values(**values)
                )

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
        row = _RunRow(
            run_id=_new_id("run"),
            schedule_id=schedule_id,
            trigger_kind=trigger_kind,
            run_at=_coerce_utc(run_at),
            period_start=period_start,
            period_end=period_end,
            requests_created=requests_created,
            emails_sent=emails_sent,
            errors_json=_dump_json([value.to_dict() for value in errors]),
            status=status,
            company_ids_json=_dump_json(list(company_ids)),
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return _run_record(row)

    def list_runs(self, schedule_id: str) -> list[RunRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_RunRow)
                .where(_RunRow.schedule_id == schedule_id)
                .order_by(_RunRow.run_at.desc(), _RunRow.created_at.desc())
            ).scalars()
            return [_run_record(row) for row in rows]


def create_schedule_store(*, backend: str, database_url: str) -> ScheduleStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyScheduleStore(database_url)
    if normalized == "inmemory":
        return InMemoryScheduleStore()
    raise RuntimeError(f"unsupported SCHEDULE_STORE_BACKEND: {backend}")
