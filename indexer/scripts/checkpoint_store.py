"""Durable per-chain indexing progress, stored in the ``checkpoints`` table."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from error_map import StorageTransactionError
from models import Checkpoint

CHECKPOINTS_DDL = """
CREATE TABLE IF NOT EXISTS checkpoints (
    chain_id INTEGER PRIMARY KEY,
    last_processed_block_number INTEGER NOT NULL,
    last_processed_block_hash TEXT,
    updated_at TEXT NOT NULL
)
"""


def _now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _require_transaction(conn: sqlite3.Connection, action: str) -> None:
    if not conn.in_transaction:
        raise StorageTransactionError(f"checkpoint {action} must run inside the batch transaction")


def load(conn: sqlite3.Connection, chain_id: int) -> Checkpoint | None:
    row = conn.execute(
        "SELECT chain_id, last_processed_block_number, last_processed_block_hash, updated_at "
        "FROM checkpoints WHERE chain_id = ?",
        (chain_id,),
    ).fetchone()
    if row is None:
        return None
    return Checkpoint(
        chain_id=int(row[0]),
        last_processed_block_number=int(row[1]),
        last_processed_block_hash=row[2],
        updated_at=row[3],
    )


def save(conn: sqlite3.Connection, checkpoint: Checkpoint) -> Checkpoint:
    """Write the checkpoint as part of the caller's open transaction."""
    _require_transaction(conn, "save")
    stamped = Checkpoint(
        chain_id=checkpoint.chain_id,
        last_processed_block_number=checkpoint.last_processed_block_number,
        last_processed_block_hash=checkpoint.last_processed_block_hash,
        updated_at=_now(),
    )
    conn.execute(
        "INSERT INTO checkpoints (chain_id, last_processed_block_number, last_processed_block_hash, updated_at) "
        "VALUES (?, ?, ?, ?) "
        "ON CONFLICT(chain_id) DO UPDATE SET "
        "last_processed_block_number = excluded.last_processed_block_number, "
        "last_processed_block_hash = excluded.last_processed_block_hash, "
        "updated_at = excluded.updated_at",
        (
            stamped.chain_id,
            stamped.last_processed_block_number,
            stamped.last_processed_block_hash,
            stamped.updated_at,
        ),
    )
    return stamped


def seed(conn: sqlite3.Connection, checkpoint: Checkpoint) -> Checkpoint:
    """Insert the initial checkpoint unless one already exists; return the live row."""
    _require_transaction(conn, "seed")
    conn.execute(
        "INSERT OR IGNORE INTO checkpoints "
        "(chain_id, last_processed_block_number, last_processed_block_hash, updated_at) VALUES (?, ?, ?, ?)",
        (
            checkpoint.chain_id,
            checkpoint.last_processed_block_number,
            checkpoint.last_processed_block_hash,
            _now(),
        ),
    )
    live = load(conn, checkpoint.chain_id)
    if live is None:
        raise StorageTransactionError(f"checkpoint for chain {checkpoint.chain_id} missing after seed")
    return live
