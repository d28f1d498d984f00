from __future__ import annotations

import hashlib
import json
import os
import subprocess
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any

from abi_codec import encode_abi, encode_topic, parse_event_declaration
from config import IndexerConfig

ROOT = Path(__file__).resolve().parents[1]
SCRIPTS = ROOT / "scripts"

CHAIN_ID = 31337
GOVERNOR = "0x1111111111111111111111111111111111111111"
EDIT_SUGGESTIONS = "0x2222222222222222222222222222222222222222"
TREASURY = "0x3333333333333333333333333333333333333333"
ALICE = "0x00000000000000000000000000000000000a11ce"
BOB = "0x0000000000000000000000000000000000000b0b"

PROPOSAL_CREATED_DECL = (
    "ProposalCreated(uint256 indexed proposalId, address indexed proposer, string title, "
    "string description, address[] targets, uint256[] values, bytes[] calldatas, "
    "uint256 startBlock, uint256 endBlock, uint256 stakeAmount)"
)
VOTE_CAST_DECL = "VoteCast(uint256 indexed proposalId, address indexed voter, uint8 support, uint256 weight, string reason)"
LEGACY_VOTE_CAST_DECL = "VoteCast(uint256 indexed proposalId, address indexed voter, uint8 support, uint256 weight)"
PROPOSAL_EXECUTED_DECL = "ProposalExecuted(uint256 indexed proposalId)"
TRADE_PLACED_DECL = (
    "TradePlaced(uint256 indexed proposalId, address indexed trader, bool isYes, uint256 amountIn, "
    "uint256 amountOut, uint256 newPrice)"
)


def _hash(*parts: Any) -> str:
    return "0x" + hashlib.sha256(":".join(str(p) for p in parts).encode("utf-8")).hexdigest()


def build_log(
    declaration: str,
    indexed: list[Any],
    data: list[Any],
    *,
    address: str = GOVERNOR,
    tx_hash: str | None = None,
) -> dict[str, Any]:
    """Raw log for ``declaration``; block fields are filled in by ``FakeChain.add_log``."""
    decl = parse_event_declaration(declaration)
    topics = [decl.topic0]
    topics.extend(encode_topic(arg.type, value) for arg, value in zip(decl.indexed_args, indexed, strict=True))
    payload = encode_abi([arg.type for arg in decl.data_args], data)
    return {
        "address": address,
        "topics": topics,
        "data": "0x" + payload.hex(),
        "blockNumber": None,
        "blockHash": None,
        "transactionHash": tx_hash,
        "transactionIndex": "0x0",
        "logIndex": None,
        "removed": False,
    }


def vote_log(proposal_id: int, voter: str = ALICE, *, support: int = 1, weight: int = 100, reason: str = "") -> dict:
    return build_log(VOTE_CAST_DECL, [proposal_id, voter], [support, weight, reason])


def executed_log(proposal_id: int) -> dict:
    return build_log(PROPOSAL_EXECUTED_DECL, [proposal_id], [])


class FakeChain:
    """Deterministic in-memory chain served over JSON-RPC."""

    def __init__(self, height: int, *, chain_id: int = CHAIN_ID) -> None:
        self.chain_id = chain_id
        self.fork = 0
        self.blocks: list[dict[str, Any]] = []
        self.logs: dict[int, list[dict[str, Any]]] = {}
        self.failures: dict[str, list[dict[str, Any]]] = {}
        self.lock = threading.Lock()
        self.extend_to(height)

    @property
    def height(self) -> int:
        return len(self.blocks) - 1

    def _make_block(self, number: int) -> dict[str, Any]:
        parent = self.blocks[number - 1]["hash"] if number > 0 else "0x" + "00" * 32
        return {
            "number": hex(number),
            "hash": _hash("block", self.fork, number, parent),
            "parentHash": parent,
            "timestamp": hex(1_700_000_000 + number * 12),
        }

    def block_hash(self, number: int) -> str:
        return self.blocks[number]["hash"]

    def extend_to(self, height: int) -> None:
        with self.lock:
            while len(self.blocks) <= height:
                self.blocks.append(self._make_block(len(self.blocks)))

    def add_log(self, block_number: int, raw_log: dict[str, Any]) -> dict[str, Any]:
        with self.lock:
            entries = self.logs.setdefault(block_number, [])
            log = dict(raw_log)
            log["blockNumber"] = hex(block_number)
            log["logIndex"] = hex(len(entries))
            log["blockHash"] = self.blocks[block_number]["hash"]
            log["transactionHash"] = raw_log.get("transactionHash") or _hash("tx", block_number, len(entries))
            entries.append(log)
            return log

    def reorg_from(self, height: int, *, drop_logs: bool = False) -> None:
        """Replace every block from ``height`` upward with a sibling chain of equal length."""
        with self.lock:
            self.fork += 1
            top = self.height
            del self.blocks[height:]
            while len(self.blocks) <= top:
                self.blocks.append(self._make_block(len(self.blocks)))
            for number in list(self.logs):
                if number < height:
                    continue
                if drop_logs:
                    del self.logs[number]
                    continue
                for log in self.logs[number]:
                    log["blockHash"] = self.blocks[number]["hash"]

    def fail_next(self, method: str, count: int = 1, message: str = "header not found") -> None:
        with self.lock:
            self.failures.setdefault(method, []).extend(
                {"code": -32000, "message": message} for _ in range(count)
            )

    def handle(self, request: dict[str, Any]) -> dict[str, Any]:
        method = request.get("method")
        params = request.get("params") or []
        response: dict[str, Any] = {"jsonrpc": "2.0", "id": request.get("id")}
        with self.lock:
            pending = self.failures.get(str(method))
            if pending:
                response["error"] = pending.pop(0)
                return response
            if method == "eth_chainId":
                response["result"] = hex(self.chain_id)
            elif method == "eth_blockNumber":
                response["result"] = hex(self.height)
            elif method == "eth_getBlockByNumber":
                tag = params[0]
                number = self.height if tag == "latest" else int(tag, 16)
                response["result"] = dict(self.blocks[number]) if 0 <= number <= self.height else None
            elif method == "eth_getLogs":
                response["result"] = self._get_logs(params[0])
            else:
                response["error"] = {"code": -32601, "message": f"method {method} not found"}
        return response

    def _get_logs(self, logs_filter: dict[str, Any]) -> list[dict[str, Any]]:
        from_block = int(logs_filter["fromBlock"], 16)
        to_block = int(logs_filter["toBlock"], 16)
        addresses = logs_filter.get("address")
        if isinstance(addresses, str):
            addresses = [addresses]
        wanted = {a.lower() for a in addresses} if addresses else None
        topics = logs_filter.get("topics") or []
        topic0s = topics[0] if topics else None
        if isinstance(topic0s, str):
            topic0s = [topic0s]

        out = []
        for number in range(from_block, min(to_block, self.height) + 1):
            for log in self.logs.get(number, []):
                if wanted is not None and log["address"].lower() not in wanted:
                    continue
                if topic0s and log["topics"][0] not in topic0s:
                    continue
                out.append(dict(log))
        return out


class _ChainHandler(BaseHTTPRequestHandler):
    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length", "0"))
        payload = json.loads(self.rfile.read(length).decode("utf-8"))
        chain: FakeChain = self.server.chain  # type: ignore[attr-defined]
        self.server.calls.append(payload)  # type: ignore[attr-defined]
        if isinstance(payload, list):
            response_payload: Any = [chain.handle(item) for item in payload]
        else:
            response_payload = chain.handle(payload)

        encoded = json.dumps(response_payload).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format: str, *args) -> None:  # noqa: A003
        return


def _serve(chain: FakeChain) -> tuple[HTTPServer, str]:
    server = HTTPServer(("127.0.0.1", 0), _ChainHandler)
    server.chain = chain  # type: ignore[attr-defined]
    server.calls = []  # type: ignore[attr-defined]
    url = f"http://127.0.0.1:{server.server_address[1]}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, url


def _stop(server: HTTPServer) -> None:
    server.shutdown()
    server.server_close()


def _config(url: str, db_path: str = ":memory:", **overrides: Any) -> IndexerConfig:
    values: dict[str, Any] = {
        "rpc_url": url,
        "db_path": db_path,
        "confirmation_depth": 2,
        "max_batch_blocks": 100,
        "poll_interval_ms": 10,
        "rpc_timeout_seconds": 5.0,
        "rpc_retries": 0,
        "max_retries": 0,
        "backoff_base_ms": 1,
        "backoff_max_ms": 5,
        "contracts": {"governor": [GOVERNOR], "edit_suggestions": [EDIT_SUGGESTIONS], "futarchy_treasury": [TREASURY]},
    }
    values.update(overrides)
    return IndexerConfig(**values)


def _run_cmd(
    command: str,
    args: list[str],
    extra_env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    cmd = [
        sys.executable,
        str(SCRIPTS / "gov_indexer.py"),
        command,
        *args,
    ]
    env = os.environ.copy()
    for key in list(env):
        if key == "ETH_RPC_URL" or key.startswith("INDEXER_"):
            env.pop(key)
    if extra_env:
        env.update(extra_env)
    return subprocess.run(cmd, capture_output=True, text=True, check=False, env=env, timeout=60)
