"""Compute the next confirmation-safe block range to scan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class BlockWindow:
    from_block: int
    to_block: int

    @property
    def is_empty(self) -> bool:
        return self.to_block < self.from_block

    def __len__(self) -> int:
        return 0 if self.is_empty else self.to_block - self.from_block + 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.from_block, self.to_block + 1))

    def to_dict(self) -> dict[str, int]:
        return {"from_block": self.from_block, "to_block": self.to_block, "blocks": len(self)}


def safe_tip(current_height: int, confirmation_depth: int) -> int:
    return current_height - confirmation_depth


def plan_window(
    last_processed: int,
    current_height: int,
    confirmation_depth: int,
    max_batch_blocks: int,
) -> BlockWindow:
    """Next window after ``last_processed``, bounded by the safe tip and batch size.

    The result is empty (``to_block < from_block``) when nothing new is
    confirmation-safe yet.
    """
    if confirmation_depth < 0:
        raise ValueError("confirmation_depth must be >= 0")
    if max_batch_blocks <= 0:
        raise ValueError("max_batch_blocks must be positive")
    from_block = last_processed + 1
    to_block = min(safe_tip(current_height, confirmation_depth), from_block + max_batch_blocks - 1)
    return BlockWindow(from_block=from_block, to_block=to_block)
