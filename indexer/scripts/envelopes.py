"""JSON result envelopes printed by the CLI."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Callable

TimestampFn = Callable[[], str]


def timestamp() -> str:
    return datetime.now(UTC).isoformat()


def json_dump(payload: Any, pretty: bool = True) -> str:
    return json.dumps(payload, indent=2 if pretty else None, sort_keys=False)


def build_ok_payload(
    *,
    method: str,
    result: Any,
    timestamp_fn: TimestampFn = timestamp,
) -> dict[str, Any]:
    return {
        "timestamp_utc": timestamp_fn(),
        "method": method,
        "status": "ok",
        "ok": True,
        "error_code": None,
        "error_message": None,
        "result": result,
    }


def build_error_payload(
    *,
    method: str,
    code: str,
    message: str,
    status: str = "error",
    result: Any = None,
    timestamp_fn: TimestampFn = timestamp,
) -> dict[str, Any]:
    payload = {
        "timestamp_utc": timestamp_fn(),
        "method": method,
        "status": status,
        "ok": False,
        "error_code": code,
        "error_message": message,
    }
    if result is not None:
        payload["result"] = result
    return payload
