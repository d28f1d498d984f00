"""SQLite persistence for governance events, block hashes and checkpoints.

Every mutation happens inside one ``BEGIN IMMEDIATE`` transaction, so a
batch of events, the block hashes it covers and the checkpoint advance land
together or not at all. A second writer (another process pointed at the same
file) is serialized by SQLite's write lock rather than interleaved.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Iterable, Iterator

import checkpoint_store
from error_map import StorageTransactionError
from models import BlockHeader, Checkpoint, DomainEvent

logger = logging.getLogger(__name__)

SCHEMA = (
    checkpoint_store.CHECKPOINTS_DDL,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL,
        chain_id INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        contract_address TEXT NOT NULL,
        block_number INTEGER NOT NULL,
        block_hash TEXT NOT NULL,
        tx_hash TEXT NOT NULL,
        log_index INTEGER NOT NULL,
        emitted_at INTEGER NOT NULL,
        payload TEXT NOT NULL,
        reorged INTEGER NOT NULL DEFAULT 0,
        reorged_at TEXT,
        inserted_at TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS events_live_event_id ON events(event_id) WHERE reorged = 0",
    "CREATE INDEX IF NOT EXISTS events_chain_block ON events(chain_id, block_number)",
    "CREATE INDEX IF NOT EXISTS events_type_block ON events(event_type, block_number)",
    """
    CREATE TABLE IF NOT EXISTS block_hashes (
        chain_id INTEGER NOT NULL,
        block_number INTEGER NOT NULL,
        block_hash TEXT NOT NULL,
        parent_hash TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        PRIMARY KEY (chain_id, block_number)
    )
    """,
)

EVENT_COLUMNS = (
    "event_id, chain_id, event_type, contract_address, block_number, block_hash, "
    "tx_hash, log_index, emitted_at, payload, reorged"
)


def _utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _row_to_event(row: sqlite3.Row) -> DomainEvent:
    return DomainEvent(
        event_id=row["event_id"],
        chain_id=int(row["chain_id"]),
        event_type=row["event_type"],
        contract_address=row["contract_address"],
        block_number=int(row["block_number"]),
        block_hash=row["block_hash"],
        tx_hash=row["tx_hash"],
        log_index=int(row["log_index"]),
        emitted_at=int(row["emitted_at"]),
        payload=json.loads(row["payload"]),
        reorged=bool(row["reorged"]),
    )


class EventStore:
    """One SQLite database, shared by the polling thread and readers."""

    def __init__(self, db_path: str, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
            if db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            with self.transaction() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
        except sqlite3.Error as err:
            raise StorageTransactionError(f"cannot open event store {db_path}: {err}") from err

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> EventStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as err:
                raise StorageTransactionError(f"cannot begin transaction: {err}") from err
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as err:
                self._abort()
                raise StorageTransactionError(f"transaction aborted: {err}") from err
            except BaseException:
                self._abort()
                raise

    def _abort(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def _insert_event(self, conn: sqlite3.Connection, event: DomainEvent) -> bool:
        cursor = conn.execute(
            f"INSERT OR IGNORE INTO events ({EVENT_COLUMNS}, inserted_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)",
            (
                event.event_id,
                event.chain_id,
                event.event_type,
                event.contract_address,
                event.block_number,
                event.block_hash,
                event.tx_hash,
                event.log_index,
                event.emitted_at,
                json.dumps(event.payload, sort_keys=True),
                _utc_now(),
            ),
        )
        return cursor.rowcount == 1

    def commit_batch(
        self,
        events: Iterable[DomainEvent],
        checkpoint: Checkpoint,
        headers: Iterable[BlockHeader] = (),
    ) -> int:
        """Persist a scanned window atomically; returns the number of new event rows."""
        inserted = 0
        with self.transaction() as conn:
            for header in headers:
                conn.execute(
                    "INSERT OR REPLACE INTO block_hashes (chain_id, block_number, block_hash, parent_hash, timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (checkpoint.chain_id, header.number, header.hash, header.parent_hash, header.timestamp),
                )
            for event in events:
                if self._insert_event(conn, event):
                    inserted += 1
            checkpoint_store.save(conn, checkpoint)
        return inserted

    def rollback(self, chain_id: int, fork_point: int) -> dict[str, int]:
        """Soft-delete everything above ``fork_point`` and rewind the checkpoint to it.

        Returns how many live events of each type were marked reorged.
        """
        with self.transaction() as conn:
            counts = {
                row[0]: int(row[1])
                for row in conn.execute(
                    "SELECT event_type, COUNT(*) FROM events "
                    "WHERE chain_id = ? AND reorged = 0 AND block_number > ? GROUP BY event_type",
                    (chain_id, fork_point),
                )
            }
            conn.execute(
                "UPDATE events SET reorged = 1, reorged_at = ? WHERE chain_id = ? AND reorged = 0 AND block_number > ?",
                (_utc_now(), chain_id, fork_point),
            )
            fork_hash = self._block_hash(conn, chain_id, fork_point)
            conn.execute(
                "DELETE FROM block_hashes WHERE chain_id = ? AND block_number > ?",
                (chain_id, fork_point),
            )
            checkpoint_store.save(
                conn,
                Checkpoint(
                    chain_id=chain_id,
                    last_processed_block_number=fork_point,
                    last_processed_block_hash=fork_hash,
                ),
            )
        logger.info("rolled back chain %d above block %d: %s", chain_id, fork_point, counts or "no events")
        return counts

    def seed_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        with self.transaction() as conn:
            return checkpoint_store.seed(conn, checkpoint)

    def load_checkpoint(self, chain_id: int) -> Checkpoint | None:
        with self._lock:
            try:
                return checkpoint_store.load(self._conn, chain_id)
            except sqlite3.Error as err:
                raise StorageTransactionError(f"cannot read checkpoint: {err}") from err

    def checkpoints(self) -> list[Checkpoint]:
        with self._lock:
            chain_ids = [int(row[0]) for row in self._conn.execute("SELECT chain_id FROM checkpoints ORDER BY chain_id")]
            return [cp for cp in (checkpoint_store.load(self._conn, cid) for cid in chain_ids) if cp is not None]

    def _block_hash(self, conn: sqlite3.Connection, chain_id: int, number: int) -> str | None:
        row = conn.execute(
            "SELECT block_hash FROM block_hashes WHERE chain_id = ? AND block_number = ?",
            (chain_id, number),
        ).fetchone()
        if row is not None:
            return row[0]
        checkpoint = checkpoint_store.load(conn, chain_id)
        if checkpoint is not None and checkpoint.last_processed_block_number == number:
            return checkpoint.last_processed_block_hash
        return None

    def stored_block_hash(self, chain_id: int, number: int) -> str | None:
        """Recorded hash at ``number``, falling back to the checkpoint's own hash."""
        with self._lock:
            return self._block_hash(self._conn, chain_id, number)

    def query_events(
        self,
        *,
        chain_id: int | None = None,
        event_type: str | None = None,
        since_block: int | None = None,
        contract: str | None = None,
        proposal_id: str | None = None,
        include_reorged: bool = False,
        limit: int | None = 100,
    ) -> list[DomainEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if chain_id is not None:
            clauses.append("chain_id = ?")
            params.append(chain_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type)
        if since_block is not None:
            clauses.append("block_number >= ?")
            params.append(since_block)
        if contract is not None:
            clauses.append("contract_address = ?")
            params.append(contract.lower())
        if proposal_id is not None:
            clauses.append("json_extract(payload, '$.proposal_id') = ?")
            params.append(str(proposal_id))
        if not include_reorged:
            clauses.append("reorged = 0")

        sql = f"SELECT {EVENT_COLUMNS} FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY block_number, log_index, id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            return [_row_to_event(row) for row in self._conn.execute(sql, params)]

    def get_event(self, event_id: str) -> DomainEvent | None:
        # Prefer the live row; otherwise the most recently superseded one.
        with self._lock:
            row = self._conn.execute(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE event_id = ? ORDER BY reorged ASC, id DESC LIMIT 1",
                (event_id.lower(),),
            ).fetchone()
        return None if row is None else _row_to_event(row)

    def event_counts(self, chain_id: int | None = None) -> dict[str, Any]:
        sql = "SELECT event_type, reorged, COUNT(*) FROM events"
        params: list[Any] = []
        if chain_id is not None:
            sql += " WHERE chain_id = ?"
            params.append(chain_id)
        sql += " GROUP BY event_type, reorged ORDER BY event_type"
        live: dict[str, int] = {}
        reorged = 0
        with self._lock:
            for event_type, is_reorged, count in self._conn.execute(sql, params):
                if is_reorged:
                    reorged += int(count)
                else:
                    live[event_type] = int(count)
        return {"live": live, "live_total": sum(live.values()), "reorged_total": reorged}
