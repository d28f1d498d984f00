"""Turn raw eth_getLogs entries into typed governance events."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from abi_codec import HEX_RE, decode_event
from error_map import MalformedLogError
from event_registry import EventDefinition, definitions_by_topic0
from models import DomainEvent
from quantity import parse_quantity

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def _required_hex(raw_log: dict[str, Any], key: str) -> str:
    value = raw_log.get(key)
    if not isinstance(value, str) or not HEX_RE.fullmatch(value) or len(value) <= 2:
        raise MalformedLogError(f"log field {key!r} must be a non-empty 0x-prefixed hex string")
    return value.lower()


def _required_quantity(raw_log: dict[str, Any], key: str) -> int:
    if raw_log.get(key) is None:
        raise MalformedLogError(f"log field {key!r} is missing")
    try:
        return parse_quantity(raw_log[key], field=key)
    except ValueError as err:
        raise MalformedLogError(str(err)) from None


class EventDecoder:
    """Decode logs for one chain, optionally restricted to known contract addresses.

    ``contracts`` maps a contract role (see ``event_registry.CONTRACT_ROLES``)
    to its addresses. When it is empty every emitter is accepted and events
    are matched by topic only.
    """

    def __init__(self, chain_id: int, contracts: dict[str, list[str]] | None = None) -> None:
        self.chain_id = chain_id
        self._role_by_address = {
            address.lower(): role for role, addresses in (contracts or {}).items() for address in addresses
        }

    def match(self, raw_log: dict[str, Any]) -> EventDefinition | None:
        topics = raw_log.get("topics")
        if not isinstance(topics, list) or not topics or not isinstance(topics[0], str):
            return None
        candidates = definitions_by_topic0().get(topics[0].lower(), ())
        if not candidates:
            return None
        if not self._role_by_address:
            return candidates[0]
        role = self._role_by_address.get(str(raw_log.get("address", "")).lower())
        for definition in candidates:
            if definition.role == role:
                return definition
        return None

    def decode(self, raw_log: Any, *, block_timestamp: int | None = None) -> DomainEvent | None:
        """Decode one log; ``None`` means the log is not a governance event."""
        if not isinstance(raw_log, dict):
            raise MalformedLogError("log entry must be an object")
        if raw_log.get("removed") is True:
            return None

        topics = raw_log.get("topics")
        if not isinstance(topics, list):
            raise MalformedLogError("log field 'topics' must be an array")
        definition = self.match(raw_log)
        if definition is None:
            return None

        address = _required_hex(raw_log, "address")
        block_number = _required_quantity(raw_log, "blockNumber")
        block_hash = _required_hex(raw_log, "blockHash")
        tx_hash = _required_hex(raw_log, "transactionHash")
        log_index = _required_quantity(raw_log, "logIndex")
        data = raw_log.get("data")
        if data is None:
            data = "0x"

        try:
            values, defaulted = decode_event(definition.declaration, topics, data, optional=definition.optional)
        except ValueError as err:
            raise MalformedLogError(f"{definition.event_type} at {tx_hash}:{log_index}: {err}") from None
        if defaulted:
            logger.debug(
                "%s at %s:%d missing optional fields %s, using defaults",
                definition.event_type,
                tx_hash,
                log_index,
                ", ".join(defaulted),
            )

        emitted_at = block_timestamp
        if raw_log.get("blockTimestamp") is not None:
            try:
                emitted_at = parse_quantity(raw_log["blockTimestamp"], field="blockTimestamp")
            except ValueError as err:
                logger.debug("ignoring blockTimestamp on %s:%d: %s", tx_hash, log_index, err)

        return DomainEvent(
            event_id=DomainEvent.make_event_id(tx_hash, log_index),
            chain_id=self.chain_id,
            event_type=definition.event_type,
            contract_address=address,
            block_number=block_number,
            block_hash=block_hash,
            tx_hash=tx_hash,
            log_index=log_index,
            emitted_at=emitted_at or 0,
            payload={snake_case(name): value for name, value in values.items()},
        )

    def decode_logs(
        self,
        raw_logs: Iterable[Any],
        *,
        timestamps: dict[int, int] | None = None,
    ) -> tuple[list[DomainEvent], int]:
        """Decode a batch, skipping malformed logs.

        Returns the events ordered by ``(block_number, log_index)`` and the
        number of logs skipped as malformed.
        """
        stamps = timestamps or {}
        events: list[DomainEvent] = []
        skipped = 0
        for raw_log in raw_logs:
            try:
                block_timestamp = None
                if isinstance(raw_log, dict) and raw_log.get("blockNumber") is not None:
                    try:
                        block_timestamp = stamps.get(parse_quantity(raw_log["blockNumber"]))
                    except ValueError:
                        block_timestamp = None
                event = self.decode(raw_log, block_timestamp=block_timestamp)
            except MalformedLogError as err:
                skipped += 1
                logger.warning("skipping malformed log: %s", err)
                continue
            if event is not None:
                events.append(event)
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events, skipped
