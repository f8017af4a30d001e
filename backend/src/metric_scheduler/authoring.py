from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .periods import CADENCES, MAX_DAY_OF_MONTH, MIN_DAY_OF_MONTH, next_run_on_resume
from .state_machine import get_owned_schedule
from .store import ScheduleRecord, ScheduleStore, TemplateNotFoundError, TemplateRecord

logger = logging.getLogger(__name__)

MIN_DUE_DAYS_OFFSET = 1
MAX_DUE_DAYS_OFFSET = 90
DEFAULT_DUE_DAYS_OFFSET = 7
MIN_REMINDER_DAYS = 1
MAX_REMINDER_DAYS = 30
DEFAULT_REMINDER_DAYS = (3, 1)

UPDATABLE_FIELDS = (
    "name",
    "cadence",
    "day_of_month",
    "company_ids",
    "include_future_companies",
    "due_days_offset",
    "reminder_enabled",
    "reminder_days_before_due",
)
# Null company scope means the whole portfolio.
NULLABLE_FIELDS = frozenset({"company_ids"})


class ScheduleValidationError(ValueError):
    """Raised when schedule settings fail authoring rules."""


class TemplateAccessError(PermissionError):
    """Raised when an investor references another investor's private template."""


@dataclass(frozen=True)
class ScheduleDraft:
    name: str
    template_id: str
    cadence: str
    day_of_month: int
    company_ids: tuple[str, ...] | None = None
    include_future_companies: bool = False
    due_days_offset: int = DEFAULT_DUE_DAYS_OFFSET
    reminder_enabled: bool = True
    reminder_days_before_due: tuple[int, ...] = DEFAULT_REMINDER_DAYS


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def validate_settings(
    *,
    name: str,
    cadence: str,
    day_of_month: int,
    due_days_offset: int,
    reminder_days_before_due: tuple[int, ...],
) -> None:
    if not name.strip():
        raise ScheduleValidationError("Name is required")
    if cadence not in CADENCES:
        raise ScheduleValidationError(f"cadence must be one of: {', '.join(CADENCES)}")
    if not MIN_DAY_OF_MONTH <= day_of_month <= MAX_DAY_OF_MONTH:
        raise ScheduleValidationError(f"day_of_month must be between {MIN_DAY_OF_MONTH} and {MAX_DAY_OF_MONTH}")
    if not MIN_DUE_DAYS_OFFSET <= due_days_offset <= MAX_DUE_DAYS_OFFSET:
        raise ScheduleValidationError(
            f"due_days_offset must be between {MIN_DUE_DAYS_OFFSET} and {MAX_DUE_DAYS_OFFSET}"
        )
    for offset in reminder_days_before_due:
        if not MIN_REMINDER_DAYS <= offset <= MAX_REMINDER_DAYS:
            raise ScheduleValidationError(
                f"reminder offsets must be between {MIN_REMINDER_DAYS} and {MAX_REMINDER_DAYS} days"
            )


def accessible_template(store: ScheduleStore, template_id: str, *, investor_id: str) -> TemplateRecord:
    template = store.get_template(template_id)
    if template is None:
        raise TemplateNotFoundError(template_id)
    if not template.accessible_to(investor_id):
        raise TemplateAccessError("Template not accessible")
    return template


def validate_company_scope(
    store: ScheduleStore,
    company_ids: tuple[str, ...] | None,
    *,
    investor_id: str,
) -> tuple[str, ...] | None:
    """Explicit scope must be a subset of the portfolio; an empty list means the whole portfolio."""
    if not company_ids:
        return None
    portfolio = set(store.portfolio_company_ids(investor_id))
    invalid = [value for value in company_ids if value not in portfolio]
    if invalid:
        raise ScheduleValidationError("Some companies are not in your portfolio")
    return tuple(dict.fromkeys(company_ids))


def create_schedule(
    store: ScheduleStore,
    draft: ScheduleDraft,
    *,
    investor_id: str,
    now: datetime | None = None,
) -> ScheduleRecord:
    validate_settings(
        name=draft.name,
        cadence=draft.cadence,
        day_of_month=draft.day_of_month,
        due_days_offset=draft.due_days_offset,
        reminder_days_before_due=draft.reminder_days_before_due,
    )
    accessible_template(store, draft.template_id, investor_id=investor_id)
    company_ids = validate_company_scope(store, draft.company_ids, investor_id=investor_id)
    next_run_at = next_run_on_resume(draft.cadence, draft.day_of_month, now or _now_utc())  # type: ignore[arg-type]
    schedule = store.create_schedule(
        investor_id=investor_id,
        template_id=draft.template_id,
        name=draft.name.strip(),
        cadence=draft.cadence,
        day_of_month=draft.day_of_month,
        company_ids=company_ids,
        include_future_companies=draft.include_future_companies,
        due_days_offset=draft.due_days_offset,
        reminder_enabled=draft.reminder_enabled,
        reminder_days_before_due=tuple(draft.reminder_days_before_due),
        next_run_at=next_run_at,
    )
    logger.info(
        "schedule created schedule_id=%s cadence=%s next_run_at=%s",
        schedule.schedule_id,
        schedule.cadence,
        next_run_at.isoformat(),
    )
    return schedule


def update_schedule(
    store: ScheduleStore,
    schedule_id: str,
    changes: dict[str, object],
    *,
    investor_id: str,
    now: datetime | None = None,
) -> ScheduleRecord:
    """Apply a partial update; ``next_run_at`` follows cadence/day changes while active."""
    current = get_owned_schedule(store, schedule_id, investor_id=investor_id)
    updates = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS}
    if not updates:
        raise ScheduleValidationError("No updates provided")
    cleared = sorted(key for key, value in updates.items() if value is None and key not in NULLABLE_FIELDS)
    if cleared:
        raise ScheduleValidationError(f"Fields cannot be null: {', '.join(cleared)}")

    if "company_ids" in updates:
        raw = updates["company_ids"]
        updates["company_ids"] = validate_company_scope(
            store,
            tuple(raw) if raw is not None else None,  # type: ignore[arg-type]
            investor_id=investor_id,
        )
    if "reminder_days_before_due" in updates:
        updates["reminder_days_before_due"] = tuple(updates["reminder_days_before_due"])  # type: ignore[arg-type]
    if "name" in updates:
        updates["name"] = str(updates["name"]).strip()

    cadence = str(updates.get("cadence", current.cadence))
    day_of_month = int(updates.get("day_of_month", current.day_of_month))  # type: ignore[arg-type]
    validate_settings(
        name=str(updates.get("name", current.name)),
        cadence=cadence,
        day_of_month=day_of_month,
        due_days_offset=int(updates.get("due_days_offset", current.due_days_offset)),  # type: ignore[arg-type]
        reminder_days_before_due=updates.get(  # type: ignore[arg-type]
            "reminder_days_before_due", current.reminder_days_before_due
        ),
    )

    timing_changed = cadence != current.cadence or day_of_month != current.day_of_month
    if current.is_active and timing_changed:
        updates["next_run_at"] = next_run_on_resume(cadence, day_of_month, now or _now_utc())  # type: ignore[arg-type]

    updated = store.update_schedule(schedule_id, updates)
    logger.info("schedule updated schedule_id=%s fields=%s", schedule_id, ",".join(sorted(updates)))
    return updated
