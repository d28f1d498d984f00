#!/usr/bin/env python3
"""Governance event indexer: follow an EVM chain and query the indexed events."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

# Local imports for script execution (python3 scripts/gov_indexer.py ...)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from config import IndexerConfig, load_config  # noqa: E402
from control_loop import OUTCOME_FAILED, OUTCOME_HALTED, Indexer  # noqa: E402
from envelopes import build_error_payload, build_ok_payload, json_dump  # noqa: E402
from error_map import (  # noqa: E402
    ERR_INTERNAL,
    ERR_INVALID_REQUEST,
    ERR_SYNC_INCOMPLETE,
    ConfigError,
    IndexerError,
    ReorgBeyondConfirmationDepthError,
)
from event_store import EventStore  # noqa: E402
from log_setup import setup_logging  # noqa: E402
from models import HEALTH_HALTED  # noqa: E402
from query_api import QueryApi  # noqa: E402

logger = logging.getLogger("gov_indexer")

EXIT_OK = 0
EXIT_RUNTIME = 1
EXIT_CONFIG = 2
EXIT_HALTED = 3


def _print(payload: dict[str, Any], args: argparse.Namespace) -> None:
    print(json_dump(payload, pretty=not args.compact))


def _print_error(args: argparse.Namespace, err: Exception, *, code: str | None = None, result: Any = None) -> None:
    _print(
        build_error_payload(
            method=args.command,
            code=code or getattr(err, "code", ERR_INTERNAL),
            message=str(err),
            result=result,
        ),
        args,
    )


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "rpc_url": getattr(args, "rpc_url", None),
        "chain_id": args.chain_id,
        "start_block": getattr(args, "start_block", None),
        "confirmation_depth": getattr(args, "confirmation_depth", None),
        "poll_interval_ms": getattr(args, "poll_interval_ms", None),
        "max_batch_blocks": getattr(args, "max_batch_blocks", None),
        "db_path": args.db_path,
        "log_level": args.log_level,
    }


def _load(args: argparse.Namespace, *, require_rpc: bool) -> IndexerConfig:
    config = load_config(config_path=args.config, overrides=_overrides(args), require_rpc=require_rpc)
    try:
        setup_logging(config.log_level)
    except ValueError as err:
        raise ConfigError(str(err)) from None
    return config


def cmd_run(args: argparse.Namespace) -> int:
    config = _load(args, require_rpc=True)
    logger.info("starting with %s", config.sanitized())
    indexer = Indexer(config)
    shutdown = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("received %s, stopping after the current step", signal.Signals(signum).name)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    indexer.start()
    try:
        while not shutdown.is_set() and indexer.is_running:
            shutdown.wait(0.5)
    finally:
        indexer.stop()
        indexer.store.close()

    status = indexer.status()
    if status.health == HEALTH_HALTED:
        _print(
            build_error_payload(
                method=args.command,
                code=ReorgBeyondConfirmationDepthError.code,
                message=status.last_error or "indexer halted",
                status="halted",
                result=status.to_dict(),
            ),
            args,
        )
        return EXIT_HALTED
    _print(build_ok_payload(method=args.command, result=status.to_dict()), args)
    return EXIT_OK


def cmd_sync(args: argparse.Namespace) -> int:
    config = _load(args, require_rpc=True)
    indexer = Indexer(config)
    try:
        results = indexer.run_until_caught_up(max_steps=args.max_steps)
    finally:
        indexer.store.close()

    status = indexer.status()
    result = {
        "steps": [step.to_dict() for step in results],
        "status": status.to_dict(),
    }
    last = results[-1].outcome if results else None
    if last == OUTCOME_HALTED:
        _print(
            build_error_payload(
                method=args.command,
                code=ReorgBeyondConfirmationDepthError.code,
                message=status.last_error or "indexer halted",
                status="halted",
                result=result,
            ),
            args,
        )
        return EXIT_HALTED
    if last == OUTCOME_FAILED:
        _print(
            build_error_payload(
                method=args.command,
                code=ERR_SYNC_INCOMPLETE,
                message=results[-1].error or "sync failed",
                result=result,
            ),
            args,
        )
        return EXIT_RUNTIME
    _print(build_ok_payload(method=args.command, result=result), args)
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    config = _load(args, require_rpc=False)
    with EventStore(config.db_path) as store:
        api = QueryApi(store, chain_id=config.chain_id)
        _print(build_ok_payload(method=args.command, result=api.indexer_status()), args)
    return EXIT_OK


def cmd_events(args: argparse.Namespace) -> int:
    config = _load(args, require_rpc=False)
    with EventStore(config.db_path) as store:
        api = QueryApi(store, chain_id=config.chain_id)
        try:
            if args.proposal_id is not None:
                events = api.proposal_events(args.proposal_id, include_reorged=args.include_reorged)
            else:
                events = api.events(
                    event_type=args.type,
                    since_block=args.since_block,
                    contract=args.contract,
                    include_reorged=args.include_reorged,
                    limit=args.limit,
                )
        except ValueError as err:
            _print_error(args, err, code=ERR_INVALID_REQUEST)
            return EXIT_CONFIG
        result = {"count": len(events), "events": [event.to_dict() for event in events]}
        _print(build_ok_payload(method=args.command, result=result), args)
    return EXIT_OK


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--db-path", help="SQLite database path")
    parser.add_argument("--chain-id", type=int, help="chain id (default: ask the node)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--compact", action="store_true", help="compact JSON output")


def _add_chain_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint (or ETH_RPC_URL)")
    parser.add_argument("--start-block", type=int, help="first block to index on a fresh database")
    parser.add_argument("--confirmation-depth", type=int)
    parser.add_argument("--poll-interval-ms", type=int)
    parser.add_argument("--max-batch-blocks", type=int)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Index continuously until SIGINT/SIGTERM")
    _add_common_args(run_parser)
    _add_chain_args(run_parser)
    run_parser.set_defaults(func=cmd_run)

    sync_parser = sub.add_parser("sync", help="Index up to the confirmation-safe tip, then exit")
    _add_common_args(sync_parser)
    _add_chain_args(sync_parser)
    sync_parser.add_argument("--max-steps", type=int, help="stop after this many poll steps")
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = sub.add_parser("status", help="Stored checkpoint and event counts")
    _add_common_args(status_parser)
    status_parser.set_defaults(func=cmd_status)

    events_parser = sub.add_parser("events", help="Query indexed events")
    _add_common_args(events_parser)
    events_parser.add_argument("--type", help="event type, e.g. VoteCast")
    events_parser.add_argument("--since-block", type=int)
    events_parser.add_argument("--contract", help="emitting contract address")
    events_parser.add_argument("--proposal-id", help="all events referencing one proposal")
    events_parser.add_argument("--include-reorged", action="store_true")
    events_parser.add_argument("--limit", type=int, default=100)
    events_parser.set_defaults(func=cmd_events)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except ConfigError as err:
        _print_error(args, err)
        return EXIT_CONFIG
    except ReorgBeyondConfirmationDepthError as err:
        _print_error(args, err)
        return EXIT_HALTED
    except IndexerError as err:
        _print_error(args, err)
        return EXIT_RUNTIME


if __name__ == "__main__":
    raise SystemExit(main())
