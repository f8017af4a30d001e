from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal

from .periods import next_run_after_completion
from .store import RunError, RunRecord, ScheduleRecord, ScheduleStore

logger = logging.getLogger(__name__)

RunStatus = Literal["success", "partial", "failed"]
TriggerKind = Literal["sweep", "manual"]


def derive_run_status(requests_created: int, error_count: int) -> RunStatus:
    if error_count == 0:
        return "success"
    if requests_created > 0:
        return "partial"
    return "failed"


@dataclass(frozen=True)
class LedgerEntry:
    run: RunRecord
    schedule: ScheduleRecord


class RunLedger:
    def __init__(self, store: ScheduleStore) -> None:
        self._store = store

    def record(
        self,
        schedule: ScheduleRecord,
        *,
        trigger_kind: TriggerKind,
        now: datetime,
        period_start: date,
        period_end: date,
        requests_created: int,
        emails_sent: int,
        errors: list[RunError],
        company_ids: list[str],
    ) -> LedgerEntry:
        """Append the audit row and move the schedule's run timestamps forward.

        ``last_run_at`` is always set. ``next_run_at`` advances one cadence unit
        past ``now`` but only sticks while the schedule is active, so a manual
        run on a paused schedule leaves it paused.
        """
        status = derive_run_status(requests_created, len(errors))
        run = self._store.append_run(
            schedule_id=schedule.schedule_id,
            trigger_kind=trigger_kind,
            run_at=now,
            period_start=period_start,
            period_end=period_end,
            requests_created=requests_created,
            emails_sent=emails_sent,
            errors=tuple(errors),
            status=status,
            company_ids=tuple(company_ids),
        )
        updated = self.advance(schedule, now=now)
        logger.info(
            "schedule run recorded schedule_id=%s trigger=%s status=%s requests_created=%d emails_sent=%d errors=%d",
            schedule.schedule_id,
            trigger_kind,
            status,
            requests_created,
            emails_sent,
            len(errors),
        )
        return LedgerEntry(run=run, schedule=updated)

    def advance(self, schedule: ScheduleRecord, *, now: datetime) -> ScheduleRecord:
        return self._store.record_schedule_run(
            schedule.schedule_id,
            last_run_at=now,
            next_run_at=next_run_after_completion(schedule.cadence, schedule.day_of_month, now),  # type: ignore[arg-type]
        )
