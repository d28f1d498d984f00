"""HTTP JSON-RPC transport with bounded retries."""

from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from socket import timeout as SocketTimeout
from typing import Any

from error_map import ERR_RPC_BAD_RESPONSE, ERR_RPC_TIMEOUT, ERR_RPC_TRANSPORT

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_CODES = {429, 502, 503, 504}
TRANSPORT_BACKOFFS = (0.15, 0.40)


def _sleep_backoff(attempt: int) -> None:
    if attempt < len(TRANSPORT_BACKOFFS):
        time.sleep(TRANSPORT_BACKOFFS[attempt])


def _failure(code: str, message: str, rpc_response: Any = None) -> dict[str, Any]:
    return {
        "ok": False,
        "error_code": code,
        "error_message": message,
        "rpc_response": rpc_response,
    }


def invoke_rpc(
    *,
    rpc_url: str,
    payload: dict[str, Any] | list[dict[str, Any]],
    timeout_seconds: float,
    retries: int,
) -> dict[str, Any]:
    """POST one JSON-RPC request (or a batch) and return a result envelope.

    The envelope always carries ``ok``, ``error_code``, ``error_message`` and
    ``rpc_response``. Only connection failures and retryable HTTP statuses are
    retried here; JSON-RPC level errors are returned to the caller untouched.
    """
    body = json.dumps(payload).encode("utf-8")
    last_error: dict[str, Any] | None = None

    for attempt in range(retries + 1):
        req = urllib.request.Request(
            rpc_url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
                text = resp.read().decode("utf-8")
        except SocketTimeout as err:
            return _failure(ERR_RPC_TIMEOUT, f"rpc timed out after {timeout_seconds}s: {err}")
        except urllib.error.HTTPError as err:
            text = err.read().decode("utf-8", errors="replace")
            last_error = _failure(ERR_RPC_TRANSPORT, f"http error {err.code}", {"status": err.code, "raw": text})
            if err.code in RETRYABLE_HTTP_CODES and attempt < retries:
                logger.warning("rpc http %s from %s, retrying (attempt %d)", err.code, rpc_url, attempt + 1)
                _sleep_backoff(attempt)
                continue
            return last_error
        except urllib.error.URLError as err:
            if isinstance(err.reason, SocketTimeout):
                return _failure(ERR_RPC_TIMEOUT, f"rpc timed out after {timeout_seconds}s")
            last_error = _failure(ERR_RPC_TRANSPORT, str(err))
            if attempt < retries:
                logger.warning("rpc connection to %s failed (%s), retrying", rpc_url, err.reason)
                _sleep_backoff(attempt)
                continue
            return last_error
        except (ConnectionError, OSError) as err:
            return _failure(ERR_RPC_TRANSPORT, str(err))

        try:
            rpc_response = json.loads(text)
        except json.JSONDecodeError:
            return _failure(ERR_RPC_BAD_RESPONSE, "rpc endpoint returned non-json response", {"raw": text})
        return {
            "ok": True,
            "error_code": None,
            "error_message": None,
            "rpc_response": rpc_response,
        }

    return last_error or _failure(ERR_RPC_TRANSPORT, "unknown transport failure")
