"""Poll-and-commit loop driving one chain's indexer."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from block_window import BlockWindow, plan_window
from chain_client import ChainClient
from config import IndexerConfig
from error_map import (
    ConfigError,
    ERR_LOGS_TOO_MANY_RESULTS,
    ERR_RPC_BAD_RESPONSE,
    ReorgBeyondConfirmationDepthError,
    StorageTransactionError,
    TransientRpcError,
)
from event_decoder import EventDecoder
from event_registry import build_logs_filter
from event_store import EventStore
from models import (
    HEALTH_DEGRADED,
    HEALTH_HALTED,
    HEALTH_OK,
    STATE_HALTED,
    STATE_IDLE,
    STATE_POLLING,
    STATE_RECOVERING,
    STATE_RUNNING,
    STATE_STOPPED,
    BlockHeader,
    Checkpoint,
    IndexerStatus,
)
from quantity import parse_quantity
from reorg_detector import ReorgDetector

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUTCOME_COMMITTED = "committed"
OUTCOME_IDLE = "idle"
OUTCOME_REORG = "reorg"
OUTCOME_FAILED = "failed"
OUTCOME_HALTED = "halted"
OUTCOME_STOPPED = "stopped"


@dataclass(frozen=True)
class StepResult:
    outcome: str
    window: BlockWindow | None = None
    events: int = 0
    skipped: int = 0
    fork_point: int | None = None
    rolled_back: dict[str, int] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out = dataclasses.asdict(self)
        out["window"] = self.window.to_dict() if self.window is not None else None
        return out


def _check_log_block_hashes(raw_logs: list[dict[str, Any]], headers: list[BlockHeader]) -> None:
    # Logs and headers are fetched separately; a reorg in between shows up here.
    hashes = {header.number: header.hash for header in headers}
    for raw_log in raw_logs:
        if not isinstance(raw_log, dict) or raw_log.get("removed") is True:
            continue
        try:
            number = parse_quantity(raw_log.get("blockNumber"), field="blockNumber")
        except ValueError:
            continue
        expected = hashes.get(number)
        block_hash = raw_log.get("blockHash")
        if expected is not None and isinstance(block_hash, str) and block_hash.lower() != expected:
            raise TransientRpcError(
                f"log in block {number} carries hash {block_hash}, header says {expected}",
                code=ERR_RPC_BAD_RESPONSE,
            )


class Indexer:
    """Lifecycle ``idle -> running -> (polling <-> recovering) -> stopped``.

    ``poll_once`` is one deterministic step and is what the background thread
    repeats; tests and the ``sync`` command call it directly.
    """

    def __init__(
        self,
        config: IndexerConfig,
        *,
        client: ChainClient | None = None,
        store: EventStore | None = None,
    ) -> None:
        self.config = config
        self.client = client or ChainClient(
            config.rpc_url,
            timeout_seconds=config.rpc_timeout_seconds,
            retries=config.rpc_retries,
            log_chunk_size=config.log_chunk_size,
        )
        self.store = store or EventStore(config.db_path)
        self.chain_id: int | None = config.chain_id
        self._logs_filter = build_logs_filter(config.contracts)
        self._decoder: EventDecoder | None = None
        self._detector: ReorgDetector | None = None
        self._checkpoint: Checkpoint | None = None

        self._lock = threading.Lock()
        self._status = IndexerStatus(chain_id=config.chain_id)
        self._stop_event = threading.Event()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._thread: threading.Thread | None = None

    # -- status -----------------------------------------------------------

    def status(self) -> IndexerStatus:
        with self._lock:
            return dataclasses.replace(self._status)

    def _update(self, **changes: Any) -> None:
        with self._lock:
            for key, value in changes.items():
                setattr(self._status, key, value)

    def _set_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoint = checkpoint
        self._update(last_processed_block_number=checkpoint.last_processed_block_number)

    def _reload_checkpoint(self, chain_id: int) -> None:
        checkpoint = self.store.load_checkpoint(chain_id)
        if checkpoint is None:
            raise StorageTransactionError(f"checkpoint for chain {chain_id} vanished after commit")
        self._set_checkpoint(checkpoint)

    def _record_failure(self, err: Exception) -> None:
        with self._lock:
            self._status.consecutive_failures += 1
            self._status.last_error = f"{type(err).__name__}: {err}"

    def _degrade(self, err: Exception) -> None:
        with self._lock:
            if self._status.health != HEALTH_HALTED:
                self._status.health = HEALTH_DEGRADED
            self._status.last_error = f"{type(err).__name__}: {err}"

    # -- setup ------------------------------------------------------------

    def _retrying(self, action: Callable[[], T], description: str) -> T:
        attempt = 0
        while True:
            try:
                return action()
            except TransientRpcError as err:
                self._record_failure(err)
                if attempt >= self.config.max_retries:
                    raise
                delay = self.config.backoff_seconds(attempt)
                attempt += 1
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.2fs",
                    description,
                    err,
                    attempt,
                    self.config.max_retries,
                    delay,
                )
                if self._stop_event.wait(delay):
                    raise

    def _resolve_chain_id(self) -> int:
        reported = self.client.chain_id()
        if self.config.chain_id is not None and self.config.chain_id != reported:
            raise ConfigError(f"configured chainId {self.config.chain_id} but node reports {reported}")
        return reported

    def _initial_checkpoint(self, chain_id: int) -> Checkpoint:
        if self.config.start_block is not None:
            start_block = self.config.start_block
        else:
            height = self.client.current_height()
            start_block = max(height - self.config.confirmation_depth, 0)
        return Checkpoint(
            chain_id=chain_id,
            last_processed_block_number=start_block - 1,
            last_processed_block_hash=None,
        )

    def prepare(self) -> Checkpoint:
        """Resolve the chain id and load or seed the checkpoint."""
        if self._checkpoint is not None:
            return self._checkpoint
        chain_id = self._retrying(self._resolve_chain_id, "eth_chainId")
        self.chain_id = chain_id

        checkpoint = self.store.load_checkpoint(chain_id)
        if checkpoint is None:
            seed = self._retrying(lambda: self._initial_checkpoint(chain_id), "seeding checkpoint")
            checkpoint = self.store.seed_checkpoint(seed)
            logger.info("seeded checkpoint for chain %d at block %d", chain_id, checkpoint.last_processed_block_number)
        else:
            logger.info("resuming chain %d after block %d", chain_id, checkpoint.last_processed_block_number)

        self._decoder = EventDecoder(chain_id, self.config.contracts)
        self._detector = ReorgDetector(self.client, self.store, chain_id, self.config.confirmation_depth)
        self._update(chain_id=chain_id, consecutive_failures=0)
        self._set_checkpoint(checkpoint)
        return checkpoint

    # -- one step ---------------------------------------------------------

    def _step(self) -> StepResult:
        if self._checkpoint is None or self._decoder is None or self._detector is None:
            raise RuntimeError("prepare() must complete before polling")
        chain_id = self._checkpoint.chain_id

        height = self.client.current_height()
        self._update(chain_head=height)
        window = plan_window(
            self._checkpoint.last_processed_block_number,
            height,
            self.config.confirmation_depth,
            self.config.max_batch_blocks,
        )
        if window.is_empty:
            self._update(state=STATE_RUNNING)
            return StepResult(OUTCOME_IDLE, window=window)

        self._update(state=STATE_POLLING)
        headers = self.client.block_headers(window)
        report = self._detector.verify_window(headers)
        if report is not None:
            self._update(state=STATE_RECOVERING)
            logger.warning(
                "reorg detected at block %d, rolling back to fork point %d",
                report.detected_at,
                report.fork_point,
            )
            rolled_back = self.store.rollback(chain_id, report.fork_point)
            self._reload_checkpoint(chain_id)
            with self._lock:
                self._status.reorgs_handled += 1
                self._status.state = STATE_RUNNING
            return StepResult(OUTCOME_REORG, window=window, fork_point=report.fork_point, rolled_back=rolled_back)

        raw_logs, window = self._fetch_logs(window)
        headers = headers[: len(window)]
        _check_log_block_hashes(raw_logs, headers)
        events, skipped = self._decoder.decode_logs(
            raw_logs,
            timestamps={header.number: header.timestamp for header in headers},
        )
        inserted = self.store.commit_batch(
            events,
            Checkpoint(
                chain_id=chain_id,
                last_processed_block_number=window.to_block,
                last_processed_block_hash=headers[-1].hash,
            ),
            headers,
        )
        self._reload_checkpoint(chain_id)
        with self._lock:
            self._status.processed_events += inserted
            self._status.state = STATE_RUNNING
        logger.info(
            "committed blocks %d-%d: %d events (%d new, %d skipped)",
            window.from_block,
            window.to_block,
            len(events),
            inserted,
            skipped,
        )
        return StepResult(OUTCOME_COMMITTED, window=window, events=inserted, skipped=skipped)

    def _fetch_logs(self, window: BlockWindow) -> tuple[list[dict[str, Any]], BlockWindow]:
        """Fetch the window's logs, halving it while the node returns more than ``max_logs``."""
        while True:
            try:
                return self.client.logs(window.from_block, window.to_block, self._logs_filter), window
            except TransientRpcError as err:
                if err.code != ERR_LOGS_TOO_MANY_RESULTS or len(window) == 1:
                    raise
                smaller = BlockWindow(window.from_block, window.from_block + len(window) // 2 - 1)
                logger.warning(
                    "%s; shrinking window %d-%d to %d-%d",
                    err,
                    window.from_block,
                    window.to_block,
                    smaller.from_block,
                    smaller.to_block,
                )
                window = smaller

    def poll_once(self) -> StepResult:
        with self._lock:
            if self._status.health == HEALTH_HALTED:
                return StepResult(OUTCOME_HALTED, error=self._status.last_error)
        self.prepare()
        try:
            result = self._retrying(self._step, "poll step")
        except TransientRpcError as err:
            if self._stop_event.is_set():
                logger.info("stop requested while retrying, abandoning this tick: %s", err)
                return StepResult(OUTCOME_STOPPED, error=str(err))
            logger.warning("giving up on this tick after %d retries: %s", self.config.max_retries, err)
            self._degrade(err)
            self._update(state=STATE_RUNNING)
            return StepResult(OUTCOME_FAILED, error=str(err))
        except StorageTransactionError as err:
            logger.error("batch aborted, will retry the same window: %s", err)
            self._record_failure(err)
            self._degrade(err)
            self._update(state=STATE_RUNNING)
            return StepResult(OUTCOME_FAILED, error=str(err))
        except ReorgBeyondConfirmationDepthError as err:
            logger.error("halting: %s", err)
            self._update(health=HEALTH_HALTED, state=STATE_HALTED, last_error=f"{type(err).__name__}: {err}")
            return StepResult(OUTCOME_HALTED, error=str(err))
        self._update(health=HEALTH_OK, consecutive_failures=0)
        return result

    def run_until_caught_up(self, *, max_steps: int | None = None) -> list[StepResult]:
        """Step synchronously until the confirmation-safe tip is reached."""
        self.prepare()
        results: list[StepResult] = []
        while max_steps is None or len(results) < max_steps:
            result = self.poll_once()
            results.append(result)
            if result.outcome in (OUTCOME_IDLE, OUTCOME_FAILED, OUTCOME_HALTED, OUTCOME_STOPPED):
                break
        return results

    # -- background thread --------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self.prepare()
        self._stop_event.clear()
        self._update(is_running=True, state=STATE_RUNNING)
        self._thread = threading.Thread(
            target=self._run,
            name=f"gov-indexer-{self.chain_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info("indexer started for chain %d", self.chain_id)

    def _run(self) -> None:
        interval = self.config.poll_interval_seconds
        try:
            while not self._stop_event.is_set():
                if not self._resume_event.is_set():
                    self._resume_event.wait(interval)
                    continue
                result = self.poll_once()
                if result.outcome == OUTCOME_HALTED:
                    break
                if result.outcome in (OUTCOME_IDLE, OUTCOME_FAILED):
                    self._stop_event.wait(interval)
        except Exception as err:
            logger.exception("indexer loop crashed")
            self._update(health=HEALTH_HALTED, state=STATE_HALTED, last_error=f"{type(err).__name__}: {err}")
            raise
        finally:
            with self._lock:
                self._status.is_running = False
                if self._status.state != STATE_HALTED:
                    self._status.state = STATE_STOPPED

    def stop(self, timeout: float | None = None) -> None:
        """Finish the current step, then stop the loop."""
        self._stop_event.set()
        self._resume_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        with self._lock:
            self._status.is_running = self._thread is not None and self._thread.is_alive()
            if self._status.state not in (STATE_HALTED, STATE_IDLE):
                self._status.state = STATE_STOPPED
        logger.info("indexer stopped")

    def pause(self) -> None:
        self._resume_event.clear()
        self._update(is_paused=True)
        logger.info("indexer paused")

    def resume(self) -> None:
        self._resume_event.set()
        self._update(is_paused=False)
        logger.info("indexer resumed")
