from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

BatchStatus = Literal["sent", "failed"]

MAX_BATCH_SIZE = 100


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    founder_id: str | None = None


@dataclass(frozen=True)
class BatchSendResult:
    """Outcome of one provider batch call.

    ``accepted`` carries one flag per message when the provider reports
    per-recipient results and is ``None`` when only an aggregate status is known.
    """

    status: BatchStatus
    attempted_at: datetime
    accepted: tuple[bool, ...] | None = None
    retryable: bool = False
    error_code: str | None = None
    error_message: str | None = None


class EmailSender(Protocol):
    def send_batch(self, messages: list[EmailMessage]) -> BatchSendResult: ...


class StubEmailSender:
    """Local sender that accepts every message unless the recipient contains ``fail``."""

    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[EmailMessage] = []

    def send_batch(self, messages: list[EmailMessage]) -> BatchSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return BatchSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="email_disabled",
                error_message="Live email delivery is disabled",
            )

        accepted = tuple("fail" not in message.to.lower() for message in messages)
        self.sent.extend(message for message, ok in zip(messages, accepted) if ok)
        return BatchSendResult(status="sent", attempted_at=attempted_at, accepted=accepted)


class _EmailSendError(Exception):
    """Internal error raised when an email provider HTTP request fails."""

    def __init__(self, error_code: str, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable


class HttpEmailSender:
    """Batch email sender for a Resend-compatible ``/emails/batch`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        stripped_from = from_address.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not stripped_from:
            raise ValueError("from_address must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = stripped_from
        self._timeout_seconds = timeout_seconds

    def send_batch(self, messages: list[EmailMessage]) -> BatchSendResult:
        attempted_at = datetime.now(timezone.utc)
        if len(messages) > MAX_BATCH_SIZE:
            return BatchSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="batch_too_large",
                error_message=f"At most {MAX_BATCH_SIZE} messages per batch",
            )

        body = [
            {
                "from": self._from_address,
                "to": [message.to],
                "subject": message.subject,
                "html": message.html,
            }
            for message in messages
        ]
        try:
            response_data = self._post(body)
        except _EmailSendError as exc:
            return BatchSendResult(
                status="failed",
                attempted_at=attempted_at,
                retryable=exc.retryable,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        return BatchSendResult(
            status="sent",
            attempted_at=attempted_at,
            accepted=_accepted_flags(response_data, len(messages)),
        )

    def _post(self, body: list[dict[str, object]]) -> object:
        """Send a POST request to the provider batch endpoint."""
        url = f"{self._base_url}/emails/batch"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw.strip() else {}
        except urllib.error.HTTPError as exc:
            raise _EmailSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                retryable=exc.code >= 500,
            ) from exc
        except urllib.error.URLError as exc:
            raise _EmailSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
                retryable=True,
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _EmailSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
                retryable=True,
            ) from exc


def _accepted_flags(response_data: object, message_count: int) -> tuple[bool, ...] | None:
    if not isinstance(response_data, dict):
        return None
    entries = response_data.get("data")
    if not isinstance(entries, list):
        return None
    # Messages the provider did not report on count as not accepted.
    flags = [isinstance(entry, dict) and bool(entry.get("id")) for entry in entries[:message_count]]
    flags.extend(False for _ in range(message_count - len(flags)))
    return tuple(flags)


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" not in normalized:
        if len(normalized) <= 4:
            return "*" * len(normalized)
        return f"{normalized[:2]}***{normalized[-2:]}"
    local, domain = normalized.split("@", 1)
    if len(local) <= 1:
        return f"*@{domain}"
    return f"{local[0]}***@{domain}"
