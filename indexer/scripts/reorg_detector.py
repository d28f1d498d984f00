"""Parent-hash ancestry checks against the recorded block hash chain."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from error_map import ERR_RPC_BAD_RESPONSE, ReorgBeyondConfirmationDepthError, TransientRpcError
from models import BlockHeader, ReorgReport

logger = logging.getLogger(__name__)


class HeaderSource(Protocol):
    def block_header(self, number: int) -> BlockHeader: ...


class HashLookup(Protocol):
    def stored_block_hash(self, chain_id: int, number: int) -> str | None: ...


class ReorgDetector:
    """Detects divergence between fetched headers and what was already committed.

    The detector only reads: it fetches canonical headers while walking back
    and reports a fork point, and leaves rollback to the caller.
    """

    def __init__(
        self,
        client: HeaderSource,
        store: HashLookup,
        chain_id: int,
        confirmation_depth: int,
    ) -> None:
        self.client = client
        self.store = store
        self.chain_id = chain_id
        self.confirmation_depth = confirmation_depth

    def verify(self, header: BlockHeader) -> ReorgReport | None:
        stored_parent = self.store.stored_block_hash(self.chain_id, header.number - 1)
        if stored_parent is None or stored_parent == header.parent_hash:
            return None
        logger.warning(
            "block %d parent %s does not match recorded hash %s at %d",
            header.number,
            header.parent_hash,
            stored_parent,
            header.number - 1,
        )
        fork_point = self.find_fork_point(header.number)
        return ReorgReport(fork_point=fork_point, detected_at=header.number, depth=header.number - 1 - fork_point)

    def find_fork_point(self, detected_at: int) -> int:
        """Highest height below ``detected_at`` where the canonical and recorded chains agree.

        A height with no recorded hash counts as agreement. Walking past
        ``confirmation_depth`` mismatched blocks is fatal.
        """
        height = detected_at - 1
        mismatched = 0
        while height >= 0:
            stored = self.store.stored_block_hash(self.chain_id, height)
            if stored is None:
                return height
            canonical = self.client.block_header(height)
            if canonical.hash == stored:
                return height
            mismatched += 1
            if mismatched > self.confirmation_depth:
                raise ReorgBeyondConfirmationDepthError(
                    f"reorg detected at block {detected_at} reaches below block {height}, "
                    f"deeper than confirmation depth {self.confirmation_depth}",
                    detected_at=detected_at,
                    searched_to=height,
                )
            height -= 1
        raise ReorgBeyondConfirmationDepthError(
            f"reorg detected at block {detected_at} replaced the chain down to genesis",
            detected_at=detected_at,
            searched_to=0,
        )

    def verify_window(self, headers: Sequence[BlockHeader]) -> ReorgReport | None:
        """Check a fetched window: the first header against storage, the rest against each other."""
        if not headers:
            return None
        report = self.verify(headers[0])
        if report is not None:
            return report
        for previous, header in zip(headers, headers[1:]):
            if header.number != previous.number + 1:
                raise TransientRpcError(
                    f"non-contiguous headers {previous.number} -> {header.number}", code=ERR_RPC_BAD_RESPONSE
                )
            if header.parent_hash != previous.hash:
                raise TransientRpcError(
                    f"block {header.number} parent does not link to block {previous.number} in the same fetch",
                    code=ERR_RPC_BAD_RESPONSE,
                )
        return None
