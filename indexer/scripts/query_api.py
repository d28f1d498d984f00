"""Read-only queries over the indexed governance events."""

from __future__ import annotations

from typing import Any

from event_registry import event_types
from event_store import EventStore
from models import HEALTH_OK, Checkpoint, DomainEvent

DEFAULT_LIMIT = 100
MAX_LIMIT = 10_000


class QueryApi:
    """What UI and tooling consumers read; never mutates the store."""

    def __init__(self, store: EventStore, chain_id: int | None = None) -> None:
        self.store = store
        self.chain_id = chain_id

    def events(
        self,
        event_type: str | None = None,
        since_block: int | None = None,
        contract: str | None = None,
        include_reorged: bool = False,
        limit: int = DEFAULT_LIMIT,
    ) -> list[DomainEvent]:
        if event_type is not None and event_type not in event_types():
            raise ValueError(f"unknown event type {event_type!r}; expected one of {event_types()}")
        if since_block is not None and since_block < 0:
            raise ValueError("since_block must be >= 0")
        if not 0 < limit <= MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_LIMIT}")
        return self.store.query_events(
            chain_id=self.chain_id,
            event_type=event_type,
            since_block=since_block,
            contract=contract,
            include_reorged=include_reorged,
            limit=limit,
        )

    def event(self, event_id: str) -> DomainEvent | None:
        return self.store.get_event(event_id)

    def proposal_events(self, proposal_id: int | str, include_reorged: bool = False) -> list[DomainEvent]:
        """Every event across the governance contracts that references one proposal id."""
        return self.store.query_events(
            chain_id=self.chain_id,
            proposal_id=str(proposal_id),
            include_reorged=include_reorged,
            limit=None,
        )

    def checkpoint(self) -> Checkpoint | None:
        if self.chain_id is not None:
            return self.store.load_checkpoint(self.chain_id)
        checkpoints = self.store.checkpoints()
        return checkpoints[0] if len(checkpoints) == 1 else None

    def event_counts(self) -> dict[str, Any]:
        return self.store.event_counts(self.chain_id)

    def indexer_status(self, indexer: Any = None) -> dict[str, Any]:
        """Live loop status when an indexer is given, otherwise what storage records."""
        if indexer is not None:
            status = indexer.status().to_dict()
        else:
            checkpoint = self.checkpoint()
            status = {
                "is_running": False,
                "last_processed_block_number": (
                    checkpoint.last_processed_block_number if checkpoint is not None else None
                ),
                "health": HEALTH_OK,
                "chain_id": checkpoint.chain_id if checkpoint is not None else self.chain_id,
            }
        checkpoint = self.checkpoint()
        status["checkpoint"] = checkpoint.to_dict() if checkpoint is not None else None
        status["event_counts"] = self.event_counts()
        return status
