from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Literal

Cadence = Literal["monthly", "quarterly", "annual"]

CADENCES: tuple[str, ...] = ("monthly", "quarterly", "annual")
MIN_DAY_OF_MONTH = 1
MAX_DAY_OF_MONTH = 28
RUN_TIME_UTC = time(6, 0, tzinfo=timezone.utc)
REMINDER_TIME_UTC = time(9, 0, tzinfo=timezone.utc)

_MONTHS_PER_UNIT = {"monthly": 1, "quarterly": 3, "annual": 12}


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _months_per_unit(cadence: str) -> int:
    try:
        return _MONTHS_PER_UNIT[cadence]
    except KeyError as exc:
        raise ValueError(f"invalid cadence: {cadence}") from exc


def clamp_day_of_month(day_of_month: int) -> int:
    """Keep run days inside 1..28 so every month has the day."""
    return max(MIN_DAY_OF_MONTH, min(MAX_DAY_OF_MONTH, int(day_of_month)))


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _unit_start(cadence: str, value: date) -> date:
    """First day of the calendar month/quarter/year containing ``value``."""
    size = _months_per_unit(cadence)
    first_month = ((value.month - 1) // size) * size + 1
    return date(value.year, first_month, 1)


def _run_instant(day: date) -> datetime:
    return datetime.combine(day, RUN_TIME_UTC)


def reporting_period(cadence: Cadence, now: datetime) -> tuple[date, date]:
    """Return the most recently completed period for ``cadence`` as of ``now``.

    Monthly runs report the previous calendar month, quarterly runs the previous
    calendar quarter and annual runs the previous calendar year.
    """
    current_start = _unit_start(cadence, _coerce_utc(now).date())
    year, month = _add_months(current_start.year, current_start.month, -_months_per_unit(cadence))
    period_start = date(year, month, 1)
    period_end = current_start - timedelta(days=1)
    return period_start, period_end


def next_run_after_completion(cadence: Cadence, day_of_month: int, now: datetime) -> datetime:
    """Advance one cadence unit past the unit containing ``now``.

    Quarterly schedules land in the first month of the next quarter and annual
    schedules in January of the next year, on the clamped day at 06:00 UTC.
    """
    day = clamp_day_of_month(day_of_month)
    current_start = _unit_start(cadence, _coerce_utc(now).date())
    year, month = _add_months(current_start.year, current_start.month, _months_per_unit(cadence))
    return _run_instant(date(year, month, day))


def next_run_on_resume(cadence: Cadence, day_of_month: int, now: datetime) -> datetime:
    """Next qualifying run instant at or after ``now``.

    The run day of the current unit is used while it has not passed yet,
    otherwise the run day of the following unit.
    """
    reference = _coerce_utc(now)
    day = clamp_day_of_month(day_of_month)
    current_start = _unit_start(cadence, reference.date())
    candidate = _run_instant(current_start.replace(day=day))
    if candidate < reference:
        year, month = _add_months(current_start.year, current_start.month, _months_per_unit(cadence))
        candidate = _run_instant(date(year, month, day))
    return candidate


def reminder_dates(due_date: date, days_before: list[int]) -> list[datetime]:
    """One reminder instant per offset, earliest first.

    Duplicate offsets are kept and produce duplicate instants.
    """
    return [
        datetime.combine(due_date - timedelta(days=offset), REMINDER_TIME_UTC)
        for offset in sorted(days_before, reverse=True)
    ]


def is_schedule_due(next_run_at: datetime | None, now: datetime) -> bool:
    if next_run_at is None:
        return False
    return _coerce_utc(next_run_at) <= _coerce_utc(now)


def due_date_for(now: datetime, due_days_offset: int) -> date:
    return (_coerce_utc(now) + timedelta(days=due_days_offset)).date()


def format_reporting_period(cadence: Cadence, period_start: date) -> str:
    if cadence == "monthly":
        return f"{calendar.month_name[period_start.month]} {period_start.year}"
    if cadence == "quarterly":
        quarter = (period_start.month - 1) // 3 + 1
        return f"Q{quarter} {period_start.year}"
    if cadence == "annual":
        return str(period_start.year)
    return period_start.strftime("%b %d, %Y")


def cadence_description(cadence: Cadence) -> str:
    return {"monthly": "Monthly", "quarterly": "Quarterly", "annual": "Annually"}.get(cadence, cadence)
