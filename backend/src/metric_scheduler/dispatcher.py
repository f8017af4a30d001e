from __future__ import annotations

import html
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable

from .notifier import MAX_BATCH_SIZE, EmailMessage, EmailSender, mask_email
from .store import CompanyContact, UserRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_SECONDS = 1.0


@dataclass
class FounderNotice:
    """Everything one founder is told about in a single message."""

    founder: UserRecord
    company_names: list[str] = field(default_factory=list)
    metric_names: list[str] = field(default_factory=list)
    reference_ids: list[str] = field(default_factory=list)

    def add(self, *, company_name: str, metric_name: str, reference_id: str | None = None) -> None:
        if company_name not in self.company_names:
            self.company_names.append(company_name)
        if metric_name not in self.metric_names:
            self.metric_names.append(metric_name)
        if reference_id is not None:
            self.reference_ids.append(reference_id)


@dataclass(frozen=True)
class DispatchOutcome:
    emails_sent: int
    delivered_founder_ids: frozenset[str]
    dropped_batches: int


def group_by_founder(entries: Iterable[tuple[CompanyContact, str, str | None]]) -> list[FounderNotice]:
    """Collapse (company, metric name, reference id) entries into one notice per founder.

    Entries whose company has no reachable founder are ignored. Notice order
    follows the first appearance of each founder.
    """
    notices: dict[str, FounderNotice] = {}
    for contact, metric_name, reference_id in entries:
        if not contact.reachable or contact.founder is None:
            continue
        notice = notices.get(contact.founder.user_id)
        if notice is None:
            notice = FounderNotice(founder=contact.founder)
            notices[contact.founder.user_id] = notice
        notice.add(company_name=contact.company_name, metric_name=metric_name, reference_id=reference_id)
    return list(notices.values())


def _list_items(values: Iterable[str]) -> str:
    return "".join(f"<li>{html.escape(value)}</li>" for value in values)


def _wrap_html(body: str) -> str:
    return (
        "<!DOCTYPE html>\n<html>\n<head><meta charset=\"utf-8\"></head>\n"
        f"<body>\n<div class=\"container\">\n{body}\n"
        "<div class=\"footer\"><p>Best,<br>The Portfolio Team</p></div>\n"
        "</div>\n</body>\n</html>"
    )


def render_request_email(
    notice: FounderNotice,
    *,
    investor_name: str,
    period_label: str,
    period_end: date,
    due_date: date,
    app_base_url: str,
) -> EmailMessage:
    founder_name = notice.founder.full_name or "Founder"
    body = (
        f"<p>Hi {html.escape(founder_name)},</p>\n"
        f"<p><strong>{html.escape(investor_name)}</strong> has requested your {html.escape(period_label)} "
        f"metrics for the period ending {period_end.isoformat()}.</p>\n"
        f"<p><strong>Companies:</strong></p>\n<ul>{_list_items(notice.company_names)}</ul>\n"
        f"<p><strong>Metrics requested:</strong></p>\n<ul>{_list_items(notice.metric_names)}</ul>\n"
        f"<p><strong>Due date:</strong> {due_date.isoformat()}</p>\n"
        f"<a href=\"{html.escape(app_base_url.rstrip('/'))}/portal/requests\" class=\"button\">Submit Metrics</a>"
    )
    return EmailMessage(
        to=(notice.founder.email or "").strip(),
        subject=f"{investor_name} requested your metrics",
        html=_wrap_html(body),
        founder_id=notice.founder.user_id,
    )


def render_reminder_email(
    notice: FounderNotice,
    *,
    days_until_due: int,
    app_base_url: str,
) -> EmailMessage:
    founder_name = notice.founder.full_name or "Founder"
    if days_until_due <= 0:
        when = "today"
    elif days_until_due == 1:
        when = "tomorrow"
    else:
        when = f"in {days_until_due} days"
    body = (
        f"<p>Hi {html.escape(founder_name)},</p>\n"
        f"<div class=\"highlight\"><strong>Reminder:</strong> You have metrics due {when}.</div>\n"
        f"<p><strong>Companies:</strong></p>\n<ul>{_list_items(notice.company_names)}</ul>\n"
        f"<p><strong>Pending metrics:</strong></p>\n<ul>{_list_items(notice.metric_names)}</ul>\n"
        f"<a href=\"{html.escape(app_base_url.rstrip('/'))}/portal/requests\" class=\"button\">Submit Metrics Now</a>"
    )
    return EmailMessage(
        to=(notice.founder.email or "").strip(),
        subject=f"Reminder: Metrics due {when}",
        html=_wrap_html(body),
        founder_id=notice.founder.user_id,
    )


class NotificationDispatcher:
    """Send rendered messages in bounded batches with retry and per-recipient counting."""

    def __init__(
        self,
        *,
        sender: EmailSender,
        batch_size: int = MAX_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._sender = sender
        self._batch_size = min(batch_size, MAX_BATCH_SIZE)
        self._max_retries = max(0, max_retries)
        self._retry_base_seconds = max(0.0, retry_base_seconds)
        self._dry_run = dry_run
        self._sleep = sleep

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def dispatch(self, messages: list[EmailMessage]) -> DispatchOutcome:
        deliverable = [message for message in messages if message.to]
        if not deliverable:
            return DispatchOutcome(emails_sent=0, delivered_founder_ids=frozenset(), dropped_batches=0)

        if self._dry_run:
            for message in deliverable:
                logger.info("dry-run email to=%s subject=%s", mask_email(message.to), message.subject)
            return DispatchOutcome(
                emails_sent=len(deliverable),
                delivered_founder_ids=frozenset(
                    message.founder_id for message in deliverable if message.founder_id is not None
                ),
                dropped_batches=0,
            )

        emails_sent = 0
        dropped = 0
        delivered: set[str] = set()
        for start in range(0, len(deliverable), self._batch_size):
            batch = deliverable[start : start + self._batch_size]
            accepted = self._send_with_retry(batch)
            if accepted is None:
                dropped += 1
                continue
            for message, ok in zip(batch, accepted):
                if not ok:
                    continue
                emails_sent += 1
                if message.founder_id is not None:
                    delivered.add(message.founder_id)
        return DispatchOutcome(
            emails_sent=emails_sent,
            delivered_founder_ids=frozenset(delivered),
            dropped_batches=dropped,
        )

    def _send_with_retry(self, batch: list[EmailMessage]) -> tuple[bool, ...] | None:
        """Return per-message acceptance flags, or ``None`` when the batch was dropped."""
        for attempt in range(self._max_retries + 1):
            result = self._sender.send_batch(batch)
            if result.status == "sent":
                if result.accepted is None:
                    return tuple(True for _ in batch)
                return result.accepted
            if not result.retryable:
                logger.warning(
                    "email batch failed (not retryable) size=%d error_code=%s: %s",
                    len(batch),
                    result.error_code,
                    result.error_message,
                )
                return None
            if attempt < self._max_retries:
                delay = self._retry_base_seconds * (2**attempt)
                logger.info(
                    "email batch failed error_code=%s, retrying in %.1fs (attempt %d/%d)",
                    result.error_code,
                    delay,
                    attempt + 1,
                    self._max_retries,
                )
                self._sleep(delay)
            else:
                logger.warning(
                    "email batch dropped after %d retries size=%d error_code=%s: %s",
                    self._max_retries,
                    len(batch),
                    result.error_code,
                    result.error_message,
                )
        return None
