"""Chunked eth_getLogs execution over a numeric block range."""

from __future__ import annotations

import json
from collections import deque
from typing import Any, Callable

from error_map import (
    ERR_LOGS_TOO_MANY_RESULTS,
    ERR_RPC_BAD_RESPONSE,
    ERR_RPC_REMOTE,
    ERR_RPC_TIMEOUT,
    ERR_RPC_TRANSPORT,
)
from quantity import to_hex_quantity

DEFAULT_CHUNK_SIZE = 2_000
DEFAULT_MAX_LOGS = 50_000

SPLIT_ERROR_PATTERNS = (
    "query returned more than",
    "more than",
    "too many results",
    "response size exceeded",
    "limit exceeded",
    "block range",
    "range too wide",
    "timed out",
    "timeout",
)

ChunkFetcher = Callable[[dict[str, Any]], tuple[int, dict[str, Any]]]


def build_log_key(log_item: Any) -> tuple[Any, Any, Any]:
    if isinstance(log_item, dict):
        key = (
            log_item.get("blockNumber"),
            log_item.get("logIndex"),
            log_item.get("transactionHash"),
        )
        if all(isinstance(part, (str, int)) and not isinstance(part, bool) for part in key):
            return key
    # Wrong-shaped entries still pass through; the decoder rejects them later.
    return ("raw", json.dumps(log_item, sort_keys=True, default=str), None)


def _extract_remote_message(payload: dict[str, Any]) -> str:
    message_parts: list[str] = []
    top = payload.get("error_message")
    if isinstance(top, str):
        message_parts.append(top.lower())

    rpc_response = payload.get("rpc_response")
    if isinstance(rpc_response, dict):
        error_obj = rpc_response.get("error")
        if isinstance(error_obj, dict):
            err_message = error_obj.get("message")
            if isinstance(err_message, str):
                message_parts.append(err_message.lower())
        raw = rpc_response.get("raw")
        if isinstance(raw, str):
            message_parts.append(raw.lower())
    return " ".join(message_parts)


def should_split(error_payload: dict[str, Any]) -> bool:
    code = str(error_payload.get("error_code", ""))
    if code == ERR_RPC_TIMEOUT:
        return True
    if code != ERR_RPC_REMOTE:
        return False
    combined = _extract_remote_message(error_payload)
    return any(pattern in combined for pattern in SPLIT_ERROR_PATTERNS)


def _summary(attempts: int, splits: int, duplicates: int, returned: int) -> dict[str, int]:
    return {
        "attempted_chunks": attempts,
        "split_count": splits,
        "deduped_logs": duplicates,
        "returned_logs": returned,
    }


def run_chunked_logs(
    *,
    from_block: int,
    to_block: int,
    logs_filter: dict[str, Any],
    fetch_chunk: ChunkFetcher,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_logs: int = DEFAULT_MAX_LOGS,
    adaptive_split: bool = True,
) -> tuple[int, dict[str, Any]]:
    """Fetch logs for ``[from_block, to_block]`` in chunks.

    ``fetch_chunk`` receives a filter with hex ``fromBlock``/``toBlock`` and
    returns ``(exit_code, payload)``; a zero exit code means ``payload["result"]``
    holds the log array. Failed chunks that look like provider size limits are
    bisected when ``adaptive_split`` is on. Logs are merged in fetch order and
    de-duplicated on ``(blockNumber, logIndex, transactionHash)``.
    """
    intervals: deque[tuple[int, int]] = deque()
    cursor = from_block
    while cursor <= to_block:
        chunk_end = min(cursor + chunk_size - 1, to_block)
        intervals.append((cursor, chunk_end))
        cursor = chunk_end + 1

    attempt_count = 0
    split_count = 0
    duplicate_count = 0
    seen_keys: set[tuple[Any, Any, Any]] = set()
    merged_logs: list[Any] = []

    while intervals:
        interval_start, interval_end = intervals.popleft()
        request_filter = dict(logs_filter)
        request_filter["fromBlock"] = to_hex_quantity(interval_start)
        request_filter["toBlock"] = to_hex_quantity(interval_end)
        attempt_count += 1

        exit_code, payload = fetch_chunk(request_filter)
        if exit_code != 0:
            if adaptive_split and interval_start < interval_end and should_split(payload):
                midpoint = (interval_start + interval_end) // 2
                intervals.appendleft((midpoint + 1, interval_end))
                intervals.appendleft((interval_start, midpoint))
                split_count += 1
                continue
            return exit_code, {
                "ok": False,
                "error_code": payload.get("error_code", ERR_RPC_TRANSPORT),
                "error_message": payload.get("error_message", "log query failed"),
                "failed_interval": {"fromBlock": interval_start, "toBlock": interval_end},
                "cause": payload,
                "summary": _summary(attempt_count, split_count, duplicate_count, len(merged_logs)),
            }

        result_logs = payload.get("result")
        if not isinstance(result_logs, list):
            return 1, {
                "ok": False,
                "error_code": ERR_RPC_BAD_RESPONSE,
                "error_message": "eth_getLogs returned a non-array result",
                "failed_interval": {"fromBlock": interval_start, "toBlock": interval_end},
                "cause": payload,
                "summary": _summary(attempt_count, split_count, duplicate_count, len(merged_logs)),
            }

        for log_item in result_logs:
            log_key = build_log_key(log_item)
            if log_key in seen_keys:
                duplicate_count += 1
                continue
            seen_keys.add(log_key)
            merged_logs.append(log_item)
            if len(merged_logs) > max_logs:
                return 2, {
                    "ok": False,
                    "error_code": ERR_LOGS_TOO_MANY_RESULTS,
                    "error_message": f"log query exceeded max_logs={max_logs}",
                    "summary": _summary(attempt_count, split_count, duplicate_count, len(merged_logs)),
                }

    return 0, {
        "ok": True,
        "error_code": None,
        "error_message": None,
        "result": merged_logs,
        "summary": _summary(attempt_count, split_count, duplicate_count, len(merged_logs)),
    }
