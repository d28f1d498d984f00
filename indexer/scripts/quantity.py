"""Parsers for JSON-RPC quantity values (block numbers, log indexes, timestamps)."""

from __future__ import annotations

from typing import Any


def parse_quantity(value: Any, *, field: str = "value") -> int:
    """Parse a non-negative int, decimal string or 0x-prefixed hex quantity."""
    if isinstance(value, bool):
        raise ValueError(f"{field} cannot be boolean")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"{field} must be non-negative")
        return value
    if not isinstance(value, str):
        raise ValueError(f"{field} must be int or string")

    raw = value.strip()
    if not raw:
        raise ValueError(f"{field} cannot be empty")
    if raw.startswith(("0x", "0X")):
        if len(raw) == 2:
            raise ValueError(f"{field} hex quantity cannot be empty")
        try:
            return int(raw, 16)
        except ValueError:
            raise ValueError(f"{field} is not a valid hex quantity") from None
    if not raw.isdigit():
        raise ValueError(f"{field} must be a decimal integer or 0x-prefixed hex quantity")
    return int(raw, 10)


def parse_optional_quantity(value: Any, *, field: str = "value", default: int = 0) -> int:
    if value is None:
        return default
    return parse_quantity(value, field=field)


def to_hex_quantity(value: int) -> str:
    if value < 0:
        raise ValueError("quantity must be non-negative")
    return hex(value)
