"""Thin JSON-RPC boundary to the chain node: heights, headers and logs."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Iterable

from error_map import (
    ERR_RPC_BAD_RESPONSE,
    ERR_RPC_REMOTE,
    InvalidRangeError,
    TransientRpcError,
)
from logs_engine import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_LOGS, run_chunked_logs
from models import BlockHeader
from quantity import parse_optional_quantity, parse_quantity, to_hex_quantity
from rpc_transport import invoke_rpc

logger = logging.getLogger(__name__)

RawLog = dict[str, Any]
Transport = Callable[..., dict[str, Any]]


def parse_block_header(raw: Any) -> BlockHeader:
    if not isinstance(raw, dict):
        raise TransientRpcError("block header must be an object", code=ERR_RPC_BAD_RESPONSE)
    try:
        number = parse_quantity(raw.get("number"), field="block.number")
        block_hash = raw.get("hash")
        parent_hash = raw.get("parentHash")
        if not isinstance(block_hash, str) or not isinstance(parent_hash, str):
            raise ValueError("block.hash and block.parentHash must be strings")
        timestamp = parse_optional_quantity(raw.get("timestamp"), field="block.timestamp")
    except ValueError as err:
        raise TransientRpcError(f"malformed block header: {err}", code=ERR_RPC_BAD_RESPONSE) from None
    return BlockHeader(
        number=number,
        hash=block_hash.lower(),
        parent_hash=parent_hash.lower(),
        timestamp=timestamp,
    )


class ChainClient:
    """Pass-through adapter over an EVM JSON-RPC endpoint.

    Every failure to obtain an answer from the node surfaces as
    ``TransientRpcError``; callers decide whether and how to retry.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_seconds: float = 20.0,
        retries: int = 2,
        log_chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_logs: int = DEFAULT_MAX_LOGS,
        transport: Transport = invoke_rpc,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.log_chunk_size = log_chunk_size
        self.max_logs = max_logs
        self._transport = transport
        self._ids = itertools.count(1)

    def _request(self, method: str, params: list[Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    def _post(self, payload: dict[str, Any] | list[dict[str, Any]]) -> dict[str, Any]:
        return self._transport(
            rpc_url=self.rpc_url,
            payload=payload,
            timeout_seconds=self.timeout_seconds,
            retries=self.retries,
        )

    def _call_envelope(self, method: str, params: list[Any]) -> tuple[int, dict[str, Any]]:
        envelope = self._post(self._request(method, params))
        if not envelope.get("ok"):
            return 1, envelope
        response = envelope.get("rpc_response")
        if not isinstance(response, dict):
            return 1, {
                "ok": False,
                "error_code": ERR_RPC_BAD_RESPONSE,
                "error_message": f"{method} returned a non-object response",
                "rpc_response": response,
            }
        if response.get("error") is not None:
            error_obj = response["error"]
            message = error_obj.get("message") if isinstance(error_obj, dict) else str(error_obj)
            return 1, {
                "ok": False,
                "error_code": ERR_RPC_REMOTE,
                "error_message": f"{method} failed: {message}",
                "rpc_response": response,
            }
        return 0, {"ok": True, "result": response.get("result"), "rpc_response": response}

    def _call(self, method: str, params: list[Any]) -> Any:
        rc, payload = self._call_envelope(method, params)
        if rc != 0:
            raise TransientRpcError(
                str(payload.get("error_message") or f"{method} failed"),
                code=str(payload.get("error_code") or ERR_RPC_REMOTE),
            )
        return payload.get("result")

    def chain_id(self) -> int:
        try:
            return parse_quantity(self._call("eth_chainId", []), field="eth_chainId")
        except ValueError as err:
            raise TransientRpcError(str(err), code=ERR_RPC_BAD_RESPONSE) from None

    def current_height(self) -> int:
        try:
            return parse_quantity(self._call("eth_blockNumber", []), field="eth_blockNumber")
        except ValueError as err:
            raise TransientRpcError(str(err), code=ERR_RPC_BAD_RESPONSE) from None

    def block_header(self, number: int) -> BlockHeader:
        result = self._call("eth_getBlockByNumber", [to_hex_quantity(number), False])
        if result is None:
            raise TransientRpcError(f"block {number} not available from node", code=ERR_RPC_BAD_RESPONSE)
        header = parse_block_header(result)
        if header.number != number:
            raise TransientRpcError(
                f"node returned block {header.number} when asked for {number}", code=ERR_RPC_BAD_RESPONSE
            )
        return header

    def block_headers(self, numbers: Iterable[int]) -> list[BlockHeader]:
        """Fetch several headers with one JSON-RPC batch, in the order requested."""
        wanted = list(numbers)
        if not wanted:
            return []
        batch = [self._request("eth_getBlockByNumber", [to_hex_quantity(n), False]) for n in wanted]
        envelope = self._post(batch)
        if not envelope.get("ok"):
            raise TransientRpcError(
                str(envelope.get("error_message") or "batch request failed"),
                code=str(envelope.get("error_code") or ERR_RPC_REMOTE),
            )
        responses = envelope.get("rpc_response")
        if not isinstance(responses, list):
            raise TransientRpcError("batch request returned a non-array response", code=ERR_RPC_BAD_RESPONSE)

        by_id = {item.get("id"): item for item in responses if isinstance(item, dict)}
        headers: list[BlockHeader] = []
        for number, request in zip(wanted, batch, strict=True):
            item = by_id.get(request["id"])
            if item is None:
                raise TransientRpcError(f"batch response missing block {number}", code=ERR_RPC_BAD_RESPONSE)
            if item.get("error") is not None:
                raise TransientRpcError(f"eth_getBlockByNumber({number}) failed: {item['error']}", code=ERR_RPC_REMOTE)
            if item.get("result") is None:
                raise TransientRpcError(f"block {number} not available from node", code=ERR_RPC_BAD_RESPONSE)
            header = parse_block_header(item["result"])
            if header.number != number:
                raise TransientRpcError(
                    f"node returned block {header.number} when asked for {number}", code=ERR_RPC_BAD_RESPONSE
                )
            headers.append(header)
        return headers

    def logs(self, from_block: int, to_block: int, logs_filter: dict[str, Any] | None = None) -> list[RawLog]:
        if to_block < from_block:
            raise InvalidRangeError(f"toBlock {to_block} is below fromBlock {from_block}")

        base_filter = {k: v for k, v in (logs_filter or {}).items() if k not in {"fromBlock", "toBlock", "blockHash"}}

        def fetch_chunk(chunk_filter: dict[str, Any]) -> tuple[int, dict[str, Any]]:
            return self._call_envelope("eth_getLogs", [chunk_filter])

        rc, payload = run_chunked_logs(
            from_block=from_block,
            to_block=to_block,
            logs_filter=base_filter,
            fetch_chunk=fetch_chunk,
            chunk_size=self.log_chunk_size,
            max_logs=self.max_logs,
        )
        if rc != 0:
            raise TransientRpcError(
                str(payload.get("error_message") or "eth_getLogs failed"),
                code=str(payload.get("error_code") or ERR_RPC_REMOTE),
            )
        summary = payload.get("summary", {})
        if summary.get("split_count"):
            logger.info(
                "eth_getLogs %d-%d needed %d splits over %d chunks",
                from_block,
                to_block,
                summary["split_count"],
                summary["attempted_chunks"],
            )
        return list(payload["result"])
