"""Records shared between the indexer components."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

HEALTH_OK = "ok"
HEALTH_DEGRADED = "degraded"
HEALTH_HALTED = "halted"

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_POLLING = "polling"
STATE_RECOVERING = "recovering"
STATE_STOPPED = "stopped"
STATE_HALTED = "halted"


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: str
    parent_hash: str
    timestamp: int = 0


@dataclass(frozen=True)
class Checkpoint:
    chain_id: int
    last_processed_block_number: int
    last_processed_block_hash: str | None
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DomainEvent:
    event_id: str
    chain_id: int
    event_type: str
    contract_address: str
    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int
    emitted_at: int
    payload: dict[str, Any] = field(default_factory=dict)
    reorged: bool = False

    @staticmethod
    def make_event_id(tx_hash: str, log_index: int) -> str:
        return f"{tx_hash.lower()}:{log_index}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReorgReport:
    fork_point: int
    detected_at: int
    depth: int = 1


@dataclass
class IndexerStatus:
    is_running: bool = False
    last_processed_block_number: int | None = None
    health: str = HEALTH_OK
    state: str = STATE_IDLE
    is_paused: bool = False
    chain_id: int | None = None
    chain_head: int | None = None
    processed_events: int = 0
    reorgs_handled: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
