from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from .authoring import (
    ScheduleDraft,
    ScheduleValidationError,
    TemplateAccessError,
    create_schedule,
    update_schedule,
)
from .config import Settings, get_settings
from .cron_security import CronAuthError, require_cron_secret
from .dispatcher import NotificationDispatcher
from .fanout import FanoutEngine, FanoutResult
from .investor_tokens import InvestorTokenError, NotAnInvestorError, authenticate_investor
from .models import (
    ReminderSweepResponse,
    RunErrorView,
    RunNowResponse,
    RunView,
    ScheduleCreateRequest,
    ScheduleDetail,
    ScheduleListResponse,
    ScheduleStateResponse,
    ScheduleUpdateRequest,
    ScheduleView,
    SweepResponse,
    SweepResultItem,
    TemplateItemView,
    TemplateView,
)
from .notifier import EmailSender, HttpEmailSender, StubEmailSender
from .reminders import ReminderSweeper
from .state_machine import ScheduleSkippedError, ScheduleStateError, ScheduleStateMachine, get_owned_schedule
from .store import RunError, RunRecord, ScheduleNotFoundError, ScheduleRecord, ScheduleStore, TemplateNotFoundError
from .store_backends import create_schedule_store

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["schedules"])


class TriggerRequest(BaseModel):
    now_override: datetime | None = None


def _create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "http":
        return HttpEmailSender(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            from_address=settings.email_from_address,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender(enabled=settings.email_enabled)


schedule_store: ScheduleStore = create_schedule_store(
    backend=_settings.schedule_store_backend,
    database_url=_settings.database_url,
)
email_sender: EmailSender = _create_email_sender(_settings)
retry_sleep: Callable[[float], None] = time.sleep


def reset_runtime_state_for_tests() -> None:
    schedule_store.reset()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(
        sender=email_sender,
        batch_size=_settings.email_batch_size,
        max_retries=_settings.email_max_retries,
        retry_base_seconds=_settings.email_retry_base_seconds,
        dry_run=_settings.email_dry_run,
        sleep=retry_sleep,
    )


def _engine() -> FanoutEngine:
    return FanoutEngine(store=schedule_store, dispatcher=_dispatcher(), app_base_url=_settings.app_base_url)


def _state_machine() -> ScheduleStateMachine:
    return ScheduleStateMachine(store=schedule_store, engine=_engine())


def _trigger_now(payload: TriggerRequest | None) -> datetime:
    if payload is None or payload.now_override is None:
        return _now_utc()
    if _settings.is_production:
        raise HTTPException(status_code=400, detail="now_override is not allowed in production")
    value = payload.now_override
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_cron(request: Request) -> None:
    try:
        require_cron_secret(settings=_settings, headers=request.headers)
    except CronAuthError as exc:
        logger.warning("trigger request rejected reason=%s", exc.reason)
        raise HTTPException(status_code=401, detail="Unauthorized") from exc


def _reject_get_in_production() -> None:
    if _settings.is_production:
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, detail="Use POST")


def _require_investor(request: Request) -> str:
    try:
        user = authenticate_investor(
            request.headers.get("Authorization"),
            secret=_settings.investor_session_secret,
            store=schedule_store,
        )
    except InvestorTokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    except NotAnInvestorError as exc:
        raise HTTPException(403, "Investors only") from exc
    return user.user_id


def _template_view(template_id: str) -> TemplateView | None:
    template = schedule_store.get_template(template_id)
    if template is None:
        return None
    return TemplateView(
        template_id=template.template_id,
        name=template.name,
        description=template.description,
        is_system=template.is_system,
        items=[
            TemplateItemView(
                metric_name=item.metric_name,
                period_type=item.period_type,
                data_type=item.data_type,
                sort_order=item.sort_order,
            )
            for item in template.items
        ],
    )


def _schedule_fields(record: ScheduleRecord) -> dict[str, object]:
    return {
        "schedule_id": record.schedule_id,
        "name": record.name,
        "cadence": record.cadence,
        "day_of_month": record.day_of_month,
        "company_ids": list(record.company_ids) if record.company_ids is not None else None,
        "include_future_companies": record.include_future_companies,
        "due_days_offset": record.due_days_offset,
        "reminder_enabled": record.reminder_enabled,
        "reminder_days_before_due": list(record.reminder_days_before_due),
        "is_active": record.is_active,
        "next_run_at": record.next_run_at,
        "last_run_at": record.last_run_at,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "template_id": record.template_id,
        "template": _template_view(record.template_id),
    }


def _error_views(errors: tuple[RunError, ...]) -> list[RunErrorView]:
    return [RunErrorView(message=value.message, company=value.company, metric=value.metric) for value in errors]


def _run_view(record: RunRecord) -> RunView:
    return RunView(
        run_id=record.run_id,
        trigger_kind=record.trigger_kind,  # type: ignore[arg-type]
        run_at=record.run_at,
        period_start=record.period_start,
        period_end=record.period_end,
        requests_created=record.requests_created,
        emails_sent=record.emails_sent,
        errors=_error_views(record.errors),
        status=record.status,  # type: ignore[arg-type]
        company_ids=list(record.company_ids),
        created_at=record.created_at,
    )


def _sweep_item(result: FanoutResult) -> SweepResultItem:
    return SweepResultItem(
        schedule_id=result.schedule_id,
        status=result.status,
        requests_created=result.requests_created,
        emails_sent=result.emails_sent,
        errors=len(result.errors),
        skip_reason=result.skip_reason,
    )


# ---------------------------------------------------------------------------
# Timer triggers
# ---------------------------------------------------------------------------


@router.post("/cron/process-schedules", response_model=SweepResponse)
def process_schedules(request: Request, payload: TriggerRequest | None = None) -> SweepResponse:
    _require_cron(request)
    summary = _engine().sweep(now=_trigger_now(payload))
    return SweepResponse(
        run_at=summary.run_at,
        processed=summary.processed,
        results=[_sweep_item(value) for value in summary.results],
    )


@router.get("/cron/process-schedules", response_model=SweepResponse)
def process_schedules_get(request: Request) -> SweepResponse:
    _reject_get_in_production()
    return process_schedules(request, None)


@router.post("/cron/send-reminders", response_model=ReminderSweepResponse)
def send_reminders(request: Request, payload: TriggerRequest | None = None) -> ReminderSweepResponse:
    _require_cron(request)
    sweeper = ReminderSweeper(
        store=schedule_store,
        dispatcher=_dispatcher(),
        app_base_url=_settings.app_base_url,
        limit=_settings.reminder_sweep_limit,
    )
    summary = sweeper.run(now=_trigger_now(payload))
    return ReminderSweepResponse(
        run_at=summary.run_at,
        processed=summary.processed,
        sent=summary.sent,
        cancelled=summary.cancelled,
        pending=summary.pending,
        emails_sent=summary.emails_sent,
    )


@router.get("/cron/send-reminders", response_model=ReminderSweepResponse)
def send_reminders_get(request: Request) -> ReminderSweepResponse:
    _reject_get_in_production()
    return send_reminders(request, None)


# ---------------------------------------------------------------------------
# Investor schedules
# ---------------------------------------------------------------------------


@router.get("/investors/schedules", response_model=ScheduleListResponse)
def list_schedules(request: Request) -> ScheduleListResponse:
    investor_id = _require_investor(request)
    return ScheduleListResponse(
        schedules=[ScheduleView(**_schedule_fields(value)) for value in schedule_store.list_schedules(investor_id)]
    )


@router.post("/investors/schedules", response_model=ScheduleView, status_code=status.HTTP_201_CREATED)
def create_investor_schedule(request: Request, payload: ScheduleCreateRequest) -> ScheduleView:
    investor_id = _require_investor(request)
    draft = ScheduleDraft(
        name=payload.name,
        template_id=payload.template_id,
        cadence=payload.cadence,
        day_of_month=payload.day_of_month,
        company_ids=tuple(payload.company_ids) if payload.company_ids is not None else None,
        include_future_companies=payload.include_future_companies,
        due_days_offset=payload.due_days_offset,
        reminder_enabled=payload.reminder_enabled,
        reminder_days_before_due=tuple(payload.reminder_days_before_due),
    )
    try:
        record = create_schedule(schedule_store, draft, investor_id=investor_id)
    except TemplateNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Template not found") from exc
    except TemplateAccessError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ScheduleValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ScheduleView(**_schedule_fields(record))


@router.get("/investors/schedules/{schedule_id}", response_model=ScheduleDetail)
def get_investor_schedule(request: Request, schedule_id: str) -> ScheduleDetail:
    investor_id = _require_investor(request)
    try:
        record = get_owned_schedule(schedule_store, schedule_id, investor_id=investor_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Schedule not found") from exc
    return ScheduleDetail(
        **_schedule_fields(record),
        runs=[_run_view(value) for value in schedule_store.list_runs(schedule_id)],
    )


@router.put("/investors/schedules/{schedule_id}", response_model=ScheduleView)
def update_investor_schedule(request: Request, schedule_id: str, payload: ScheduleUpdateRequest) -> ScheduleView:
    investor_id = _require_investor(request)
    try:
        record = update_schedule(
            schedule_store,
            schedule_id,
            payload.model_dump(exclude_unset=True),
            investor_id=investor_id,
        )
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Schedule not found") from exc
    except ScheduleValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ScheduleView(**_schedule_fields(record))


@router.post("/investors/schedules/{schedule_id}/pause", response_model=ScheduleStateResponse)
def pause_investor_schedule(request: Request, schedule_id: str) -> ScheduleStateResponse:
    investor_id = _require_investor(request)
    try:
        record = _state_machine().pause(schedule_id, investor_id=investor_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Schedule not found") from exc
    except ScheduleStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ScheduleStateResponse(schedule_id=record.schedule_id, is_active=record.is_active, next_run_at=None)


@router.post("/investors/schedules/{schedule_id}/resume", response_model=ScheduleStateResponse)
def resume_investor_schedule(request: Request, schedule_id: str) -> ScheduleStateResponse:
    investor_id = _require_investor(request)
    try:
        record = _state_machine().resume(schedule_id, investor_id=investor_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Schedule not found") from exc
    except ScheduleStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ScheduleStateResponse(
        schedule_id=record.schedule_id,
        is_active=record.is_active,
        next_run_at=record.next_run_at,
    )


@router.post("/investors/schedules/{schedule_id}/run-now", response_model=RunNowResponse)
def run_investor_schedule_now(
    request: Request,
    schedule_id: str,
    payload: TriggerRequest | None = None,
) -> RunNowResponse:
    investor_id = _require_investor(request)
    now = _trigger_now(payload)
    try:
        result = _state_machine().run_now(schedule_id, investor_id=investor_id, now=now)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Schedule not found") from exc
    except ScheduleSkippedError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RunNowResponse(
        schedule_id=result.schedule_id,
        run_id=result.run.run_id if result.run is not None else None,
        status=result.status,  # type: ignore[arg-type]
        requests_created=result.requests_created,
        emails_sent=result.emails_sent,
        errors=len(result.errors),
        error_details=_error_views(result.errors),
        next_run_at=result.schedule.next_run_at if result.schedule is not None else None,
        last_run_at=result.schedule.last_run_at if result.schedule is not None else None,
    )
