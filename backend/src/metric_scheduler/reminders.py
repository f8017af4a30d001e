from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from .dispatcher import NotificationDispatcher, group_by_founder, render_reminder_email
from .store import DueReminder, ScheduleStore

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_LIMIT = 500


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReminderSweepSummary:
    run_at: datetime
    processed: int
    sent: int
    cancelled: int
    pending: int
    emails_sent: int


def _deliverable(value: DueReminder) -> bool:
    return (
        value.request is not None
        and value.request.status == "pending"
        and value.company is not None
        and value.company.reachable
        and value.metric_name is not None
    )


class ReminderSweeper:
    """Deliver due reminders, one message per founder, and cancel ones that no longer apply."""

    def __init__(
        self,
        *,
        store: ScheduleStore,
        dispatcher: NotificationDispatcher,
        app_base_url: str = "http://localhost:3000",
        limit: int = DEFAULT_SWEEP_LIMIT,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._app_base_url = app_base_url
        self._limit = max(1, limit)

    def run(self, *, now: datetime | None = None) -> ReminderSweepSummary:
        run_at = now or _now_utc()
        due = self._store.list_due_reminders(run_at, limit=self._limit)

        stale = [value.reminder.reminder_id for value in due if not _deliverable(value)]
        if stale:
            self._store.mark_reminders(stale, status="cancelled", at=run_at)

        live = [value for value in due if _deliverable(value)]
        due_dates: dict[str, date] = {
            value.reminder.reminder_id: value.request.due_date for value in live if value.request is not None
        }
        notices = group_by_founder(
            (value.company, value.metric_name, value.reminder.reminder_id)  # type: ignore[misc]
            for value in live
        )
        messages = [
            render_reminder_email(
                notice,
                days_until_due=(min(due_dates[value] for value in notice.reference_ids) - run_at.date()).days,
                app_base_url=self._app_base_url,
            )
            for notice in notices
        ]
        outcome = self._dispatcher.dispatch(messages)

        sent_ids = [
            reminder_id
            for notice in notices
            if notice.founder.user_id in outcome.delivered_founder_ids
            for reminder_id in notice.reference_ids
        ]
        if sent_ids:
            self._store.mark_reminders(sent_ids, status="sent", at=run_at)

        summary = ReminderSweepSummary(
            run_at=run_at,
            processed=len(due),
            sent=len(sent_ids),
            cancelled=len(stale),
            pending=len(live) - len(sent_ids),
            emails_sent=outcome.emails_sent,
        )
        logger.info(
            "reminder sweep finished processed=%d sent=%d cancelled=%d pending=%d emails_sent=%d",
            summary.processed,
            summary.sent,
            summary.cancelled,
            summary.pending,
            summary.emails_sent,
        )
        return summary
