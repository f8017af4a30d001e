from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

Cadence = Literal["monthly", "quarterly", "annual"]
RunStatus = Literal["success", "partial", "failed"]
OutcomeStatus = Literal["success", "partial", "failed", "skipped"]
TriggerKind = Literal["sweep", "manual"]
RequestStatus = Literal["pending", "submitted", "overdue"]


def _normalize_company_ids(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in value:
        company_id = str(raw).strip()
        if not company_id:
            raise ValueError("company_ids entries cannot be blank")
        if company_id in seen:
            continue
        seen.add(company_id)
        normalized.append(company_id)
    return normalized


def _check_reminder_offsets(value: list[int] | None) -> list[int] | None:
    if value is None:
        return None
    for offset in value:
        if offset < 1 or offset > 30:
            raise ValueError("reminder offsets must be between 1 and 30 days")
    return value


class ScheduleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    template_id: str = Field(min_length=1, max_length=64)
    cadence: Cadence
    day_of_month: int = Field(ge=1, le=28)
    company_ids: list[str] | None = None
    include_future_companies: bool = False
    due_days_offset: int = Field(default=7, ge=1, le=90)
    reminder_enabled: bool = True
    reminder_days_before_due: list[int] = Field(default_factory=lambda: [3, 1], max_length=10)

    @field_validator("name", "template_id")
    @classmethod
    def _require_non_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value cannot be blank")
        return normalized

    @field_validator("company_ids")
    @classmethod
    def _normalize_company_ids(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_company_ids(value)

    @field_validator("reminder_days_before_due")
    @classmethod
    def _check_reminder_offsets(cls, value: list[int]) -> list[int]:
        return _check_reminder_offsets(value) or []


class ScheduleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    cadence: Cadence | None = None
    day_of_month: int | None = Field(default=None, ge=1, le=28)
    company_ids: list[str] | None = None
    include_future_companies: bool | None = None
    due_days_offset: int | None = Field(default=None, ge=1, le=90)
    reminder_enabled: bool | None = None
    reminder_days_before_due: list[int] | None = Field(default=None, max_length=10)

    @field_validator("company_ids")
    @classmethod
    def _normalize_company_ids(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_company_ids(value)

    @field_validator("reminder_days_before_due")
    @classmethod
    def _check_reminder_offsets(cls, value: list[int] | None) -> list[int] | None:
        return _check_reminder_offsets(value)


class TemplateItemView(BaseModel):
    metric_name: str
    period_type: str
    data_type: str
    sort_order: int


class TemplateView(BaseModel):
    template_id: str
    name: str
    description: str | None = None
    is_system: bool
    items: list[TemplateItemView] = Field(default_factory=list)


class RunErrorView(BaseModel):
    message: str
    company: str | None = None
    metric: str | None = None


class RunView(BaseModel):
    run_id: str
    trigger_kind: TriggerKind
    run_at: datetime
    period_start: date
    period_end: date
    requests_created: int
    emails_sent: int
    errors: list[RunErrorView] = Field(default_factory=list)
    status: RunStatus
    company_ids: list[str] = Field(default_factory=list)
    created_at: datetime


class ScheduleView(BaseModel):
    schedule_id: str
    name: str
    cadence: Cadence
    day_of_month: int
    company_ids: list[str] | None = None
    include_future_companies: bool
    due_days_offset: int
    reminder_enabled: bool
    reminder_days_before_due: list[int]
    is_active: bool
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    template_id: str
    template: TemplateView | None = None


class ScheduleDetail(ScheduleView):
    runs: list[RunView] = Field(default_factory=list)


class ScheduleListResponse(BaseModel):
    schedules: list[ScheduleView]


class ScheduleStateResponse(BaseModel):
    schedule_id: str
    is_active: bool
    next_run_at: datetime | None = None
    ok: bool = True


class RunNowResponse(BaseModel):
    schedule_id: str
    run_id: str | None = None
    status: RunStatus
    requests_created: int
    emails_sent: int
    errors: int
    error_details: list[RunErrorView] = Field(default_factory=list)
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None


class SweepResultItem(BaseModel):
    schedule_id: str
    status: OutcomeStatus
    requests_created: int
    emails_sent: int
    errors: int
    skip_reason: str | None = None


class SweepResponse(BaseModel):
    run_at: datetime
    processed: int
    results: list[SweepResultItem] = Field(default_factory=list)


class ReminderSweepResponse(BaseModel):
    run_at: datetime
    processed: int
    sent: int
    cancelled: int
    pending: int
    emails_sent: int
