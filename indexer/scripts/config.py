"""Indexer configuration: defaults, YAML file, environment and CLI overrides."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from error_map import ConfigError
from event_registry import CONTRACT_ROLES

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULT_CONFIRMATION_DEPTH = 12
DEFAULT_POLL_INTERVAL_MS = 2_000
DEFAULT_MAX_BATCH_BLOCKS = 100
DEFAULT_DB_PATH = "indexer.db"

# camelCase keys accepted in YAML, mapped onto IndexerConfig fields.
KEY_ALIASES = {
    "rpcUrl": "rpc_url",
    "chainId": "chain_id",
    "startBlock": "start_block",
    "confirmationDepth": "confirmation_depth",
    "pollIntervalMs": "poll_interval_ms",
    "maxBatchBlocks": "max_batch_blocks",
    "dbPath": "db_path",
    "rpcTimeoutSeconds": "rpc_timeout_seconds",
    "rpcRetries": "rpc_retries",
    "maxRetries": "max_retries",
    "backoffBaseMs": "backoff_base_ms",
    "backoffMaxMs": "backoff_max_ms",
    "logChunkSize": "log_chunk_size",
    "logLevel": "log_level",
}
CONTRACT_ALIASES = {
    "governor": "governor",
    "editSuggestions": "edit_suggestions",
    "edit_suggestions": "edit_suggestions",
    "futarchyTreasury": "futarchy_treasury",
    "futarchy_treasury": "futarchy_treasury",
}
ENV_KEYS = {
    "ETH_RPC_URL": "rpc_url",
    "INDEXER_RPC_URL": "rpc_url",
    "INDEXER_CHAIN_ID": "chain_id",
    "INDEXER_START_BLOCK": "start_block",
    "INDEXER_CONFIRMATION_DEPTH": "confirmation_depth",
    "INDEXER_POLL_INTERVAL_MS": "poll_interval_ms",
    "INDEXER_MAX_BATCH_BLOCKS": "max_batch_blocks",
    "INDEXER_DB_PATH": "db_path",
    "INDEXER_RPC_TIMEOUT_SECONDS": "rpc_timeout_seconds",
    "INDEXER_LOG_LEVEL": "log_level",
}
ENV_CONTRACTS = {
    "INDEXER_GOVERNOR_ADDRESS": "governor",
    "INDEXER_EDIT_SUGGESTIONS_ADDRESS": "edit_suggestions",
    "INDEXER_FUTARCHY_TREASURY_ADDRESS": "futarchy_treasury",
}


@dataclass(frozen=True)
class IndexerConfig:
    rpc_url: str = ""
    chain_id: int | None = None
    start_block: int | None = None
    confirmation_depth: int = DEFAULT_CONFIRMATION_DEPTH
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    max_batch_blocks: int = DEFAULT_MAX_BATCH_BLOCKS
    db_path: str = DEFAULT_DB_PATH
    contracts: dict[str, list[str]] = field(default_factory=dict)
    rpc_timeout_seconds: float = 20.0
    rpc_retries: int = 2
    max_retries: int = 5
    backoff_base_ms: int = 500
    backoff_max_ms: int = 30_000
    log_chunk_size: int = 2_000
    log_level: str = "INFO"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.backoff_max_ms, self.backoff_base_ms * (2**attempt)) / 1000.0

    def sanitized(self) -> dict[str, Any]:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        # RPC URLs often embed provider API keys.
        out["rpc_url"] = re.sub(r"(https?://[^/]+)/.*", r"\1/...", self.rpc_url)
        return out


_INT_FIELDS = {
    "chain_id",
    "start_block",
    "confirmation_depth",
    "poll_interval_ms",
    "max_batch_blocks",
    "rpc_retries",
    "max_retries",
    "backoff_base_ms",
    "backoff_max_ms",
    "log_chunk_size",
}
_FIELD_NAMES = {f.name for f in fields(IndexerConfig)}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _INT_FIELDS:
        if isinstance(value, bool):
            raise ConfigError(f"{name} must be an integer")
        try:
            return int(str(value).strip(), 0) if isinstance(value, str) else int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if name == "rpc_timeout_seconds":
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {value!r}") from None
    return str(value)


def _normalize_contracts(raw: Any) -> dict[str, list[str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("contracts must be a mapping of role to address(es)")
    out: dict[str, list[str]] = {}
    for key, value in raw.items():
        role = CONTRACT_ALIASES.get(str(key))
        if role is None:
            raise ConfigError(f"unknown contract role {key!r}; expected one of {list(CONTRACT_ROLES)}")
        addresses = value if isinstance(value, list) else [value]
        # YAML reads an unquoted 0x... address as an integer.
        addresses = [f"0x{a:040x}" if isinstance(a, int) and not isinstance(a, bool) else a for a in addresses]
        if not all(isinstance(a, str) for a in addresses):
            raise ConfigError(f"contracts.{key} must be an address or list of addresses")
        out[role] = [a.strip().lower() for a in addresses if a.strip()]
    return out


def _normalize_mapping(raw: Mapping[str, Any], *, source: str) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "contracts":
            out["contracts"] = _normalize_contracts(value)
            continue
        name = KEY_ALIASES.get(key, key)
        if name not in _FIELD_NAMES:
            raise ConfigError(f"unknown config key {key!r} in {source}")
        out[name] = _coerce(name, value)
    return out


def load_config_file(path: str | Path) -> dict[str, Any]:
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigError(f"cannot read config file {config_path}: {err}") from None
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ConfigError(f"invalid YAML in {config_path}: {err}") from None
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping")
    return _normalize_mapping(data, source=str(config_path))


def config_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for env_key, name in ENV_KEYS.items():
        raw = environ.get(env_key, "").strip()
        if raw and name not in out:
            out[name] = _coerce(name, raw)
    contracts: dict[str, list[str]] = {}
    for env_key, role in ENV_CONTRACTS.items():
        raw = environ.get(env_key, "").strip()
        if raw:
            contracts[role] = [part.strip().lower() for part in raw.split(",") if part.strip()]
    if contracts:
        out["contracts"] = contracts
    return out


def validate_config(config: IndexerConfig, *, require_rpc: bool = True) -> None:
    if require_rpc and not config.rpc_url:
        raise ConfigError("rpcUrl is required (config file, ETH_RPC_URL or --rpc-url)")
    if config.rpc_url and not config.rpc_url.startswith(("http://", "https://")):
        raise ConfigError("rpcUrl must be an http(s) URL")
    if config.chain_id is not None and config.chain_id <= 0:
        raise ConfigError("chainId must be positive")
    if config.start_block is not None and config.start_block < 0:
        raise ConfigError("startBlock must be >= 0")
    if config.confirmation_depth < 0:
        raise ConfigError("confirmationDepth must be >= 0")
    for name in ("poll_interval_ms", "max_batch_blocks", "log_chunk_size", "backoff_base_ms", "backoff_max_ms"):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be positive")
    if config.rpc_timeout_seconds <= 0:
        raise ConfigError("rpc_timeout_seconds must be positive")
    if config.rpc_retries < 0 or config.max_retries < 0:
        raise ConfigError("retry counts must be >= 0")
    for role, addresses in config.contracts.items():
        if role not in CONTRACT_ROLES:
            raise ConfigError(f"unknown contract role {role!r}")
        for address in addresses:
            if not ADDRESS_RE.fullmatch(address):
                raise ConfigError(f"contracts.{role}: invalid address {address!r}")


def load_config(
    *,
    config_path: str | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    require_rpc: bool = True,
) -> IndexerConfig:
    """Resolve config with precedence defaults < file < environment < overrides.

    ``require_rpc=False`` is for read-only commands that only touch the
    database.
    """
    merged: dict[str, Any] = {}
    if config_path:
        merged.update(load_config_file(config_path))
    merged.update(config_from_env(os.environ if environ is None else environ))
    if overrides:
        merged.update(_normalize_mapping({k: v for k, v in overrides.items() if v is not None}, source="overrides"))

    config = replace(IndexerConfig(), **merged)
    validate_config(config, require_rpc=require_rpc)
    return config
