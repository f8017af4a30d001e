#!/usr/bin/env python3
"""Fire the schedule sweep (or the reminder sweep) against a running backend."""

from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

SWEEP_PATHS = {
    "schedules": "cron/process-schedules",
    "reminders": "cron/send-reminders",
}


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("SCHEDULER_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1"


def _post_json(base_url: str, path: str, *, payload: dict[str, Any] | None, secret: str) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    headers = {"Accept": "application/json", "Authorization": f"Bearer {secret}"}
    if body is not None:
        headers["Content-Type"] = "application/json"
    request = urllib.request.Request(f"{base_url}/{path}", data=body, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(request, timeout=120) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger the metric request schedule or reminder sweep.")
    parser.add_argument("--api-base-url", default=None, help="Backend base URL (host root or /api/v1 prefix).")
    parser.add_argument(
        "--sweep",
        choices=sorted(SWEEP_PATHS),
        default="schedules",
        help="Which sweep to run (default: schedules).",
    )
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 instant to run as (non-production backends only), e.g. 2026-04-05T06:00:00Z.",
    )
    parser.add_argument("--cron-secret", default=None, help="Shared secret. Defaults to CRON_SECRET.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    secret = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip()
    if not secret:
        raise SystemExit("CRON_SECRET is required (set .env or pass --cron-secret)")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    payload = {"now_override": args.now} if args.now else None
    result = _post_json(api_base_url, SWEEP_PATHS[args.sweep], payload=payload, secret=secret)

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
