"""Stable error codes and the indexer exception taxonomy."""

from __future__ import annotations

ERR_INTERNAL = "INTERNAL_ERROR"
ERR_INVALID_CONFIG = "INVALID_CONFIG"
ERR_INVALID_REQUEST = "INVALID_REQUEST"
ERR_RPC_TRANSPORT = "RPC_TRANSPORT_ERROR"
ERR_RPC_TIMEOUT = "RPC_TIMEOUT"
ERR_RPC_REMOTE = "RPC_REMOTE_ERROR"
ERR_RPC_BAD_RESPONSE = "RPC_BAD_RESPONSE"
ERR_INVALID_BLOCK_RANGE = "INVALID_BLOCK_RANGE"
ERR_LOGS_TOO_MANY_RESULTS = "LOGS_TOO_MANY_RESULTS"
ERR_MALFORMED_LOG = "MALFORMED_LOG"
ERR_REORG_TOO_DEEP = "REORG_BEYOND_CONFIRMATION_DEPTH"
ERR_STORAGE_TRANSACTION = "STORAGE_TRANSACTION_FAILED"
ERR_SYNC_INCOMPLETE = "SYNC_INCOMPLETE"


class IndexerError(Exception):
    code = ERR_INTERNAL

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, str]:
        return {"error_code": self.code, "error_message": str(self)}


class ConfigError(IndexerError):
    code = ERR_INVALID_CONFIG


class TransientRpcError(IndexerError):
    """Network, timeout or node-side failure worth retrying."""

    code = ERR_RPC_TRANSPORT


class InvalidRangeError(IndexerError):
    code = ERR_INVALID_BLOCK_RANGE


class MalformedLogError(IndexerError):
    """A required log field is absent or has the wrong shape."""

    code = ERR_MALFORMED_LOG


class ReorgBeyondConfirmationDepthError(IndexerError):
    code = ERR_REORG_TOO_DEEP

    def __init__(self, message: str, *, detected_at: int, searched_to: int) -> None:
        super().__init__(message)
        self.detected_at = detected_at
        self.searched_to = searched_to


class StorageTransactionError(IndexerError):
    code = ERR_STORAGE_TRANSACTION
