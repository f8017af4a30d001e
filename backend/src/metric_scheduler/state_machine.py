from __future__ import annotations

import logging
from datetime import datetime, timezone

from .fanout import FanoutEngine, FanoutResult
from .periods import next_run_on_resume
from .store import ScheduleNotFoundError, ScheduleRecord, ScheduleStore

logger = logging.getLogger(__name__)


class ScheduleStateError(ValueError):
    """Raised when a transition is not allowed from the schedule's current state."""


class ScheduleSkippedError(ValueError):
    """Raised when a manual run has nothing to fan out (no companies or template items)."""

    def __init__(self, schedule_id: str, reason: str) -> None:
        super().__init__(f"schedule {schedule_id} skipped: {reason}")
        self.schedule_id = schedule_id
        self.reason = reason


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_owned_schedule(store: ScheduleStore, schedule_id: str, *, investor_id: str) -> ScheduleRecord:
    schedule = store.get_schedule(schedule_id)
    if schedule is None or schedule.investor_id != investor_id:
        raise ScheduleNotFoundError(schedule_id)
    return schedule


class ScheduleStateMachine:
    """Active(next_run_at) <-> Paused(next_run_at = None), plus manual runs from either state."""

    def __init__(self, *, store: ScheduleStore, engine: FanoutEngine) -> None:
        self._store = store
        self._engine = engine

    def pause(self, schedule_id: str, *, investor_id: str) -> ScheduleRecord:
        get_owned_schedule(self._store, schedule_id, investor_id=investor_id)
        updated = self._store.transition_schedule(
            schedule_id,
            from_active=True,
            to_active=False,
            next_run_at=None,
        )
        if updated is None:
            raise ScheduleStateError("Schedule is already paused")
        logger.info("schedule paused schedule_id=%s", schedule_id)
        return updated

    def resume(self, schedule_id: str, *, investor_id: str, now: datetime | None = None) -> ScheduleRecord:
        schedule = get_owned_schedule(self._store, schedule_id, investor_id=investor_id)
        if schedule.is_active:
            raise ScheduleStateError("Schedule is already active")
        next_run_at = next_run_on_resume(schedule.cadence, schedule.day_of_month, now or _now_utc())  # type: ignore[arg-type]
        updated = self._store.transition_schedule(
            schedule_id,
            from_active=False,
            to_active=True,
            next_run_at=next_run_at,
        )
        if updated is None:
            raise ScheduleStateError("Schedule is already active")
        logger.info("schedule resumed schedule_id=%s next_run_at=%s", schedule_id, next_run_at.isoformat())
        return updated

    def run_now(self, schedule_id: str, *, investor_id: str, now: datetime | None = None) -> FanoutResult:
        schedule = get_owned_schedule(self._store, schedule_id, investor_id=investor_id)
        result = self._engine.run(schedule, now=now or _now_utc(), trigger_kind="manual")
        if result.skipped:
            raise ScheduleSkippedError(schedule_id, result.skip_reason or "skipped")
        return result
