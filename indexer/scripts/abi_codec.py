"""ABI encode/decode helpers for Solidity event logs.

Supports scalar types (address, bool, string, bytes, bytesN, uintN, intN) and
dynamic arrays of them (``T[]``). Decoding can be tolerant: fields named as
optional fall back to their type default when their bytes are missing or
malformed instead of failing the whole log.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from hashing import topic_hash

HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
SIG_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.*)\)$")
ZERO_ADDRESS = "0x" + "0" * 40


@dataclass(frozen=True)
class AbiType:
    kind: str
    bits: int | None = None
    size: int | None = None
    item: AbiType | None = None


@dataclass(frozen=True)
class EventArg:
    name: str
    type: AbiType
    indexed: bool


@dataclass(frozen=True)
class EventDeclaration:
    name: str
    args: tuple[EventArg, ...]
    canonical: str

    @property
    def topic0(self) -> str:
        return topic_hash(self.canonical)

    @property
    def indexed_args(self) -> list[EventArg]:
        return [arg for arg in self.args if arg.indexed]

    @property
    def data_args(self) -> list[EventArg]:
        return [arg for arg in self.args if not arg.indexed]


def _split_csv(raw: str) -> list[str]:
    text = raw.strip()
    if not text:
        return []
    out: list[str] = []
    depth = 0
    token_start = 0
    for idx, ch in enumerate(text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError("unbalanced parentheses in type list")
        elif ch == "," and depth == 0:
            out.append(text[token_start:idx].strip())
            token_start = idx + 1
    if depth != 0:
        raise ValueError("unbalanced parentheses in type list")
    out.append(text[token_start:].strip())
    if any(not item for item in out):
        raise ValueError("empty type entry in list")
    return out


def parse_type(raw_type: str) -> AbiType:
    t = str(raw_type).strip()
    if not t:
        raise ValueError("type cannot be empty")
    if t.endswith("[]"):
        inner = parse_type(t[:-2])
        if inner.kind == "array":
            raise ValueError(f"nested arrays are not supported: {raw_type}")
        return AbiType(kind="array", item=inner)
    if "[" in t or "]" in t or "(" in t:
        raise ValueError(f"unsupported ABI type (fixed arrays/tuples): {raw_type}")

    if t == "address":
        return AbiType(kind="address")
    if t == "bool":
        return AbiType(kind="bool")
    if t == "string":
        return AbiType(kind="string")
    if t == "bytes":
        return AbiType(kind="bytes_dyn")

    m_bytes = re.fullmatch(r"bytes([0-9]{1,2})", t)
    if m_bytes:
        n = int(m_bytes.group(1), 10)
        if n < 1 or n > 32:
            raise ValueError(f"invalid fixed bytes size: {t}")
        return AbiType(kind="bytes_fixed", size=n)

    m_int = re.fullmatch(r"(u?)int([0-9]{0,3})", t)
    if m_int:
        bits = int(m_int.group(2) or "256", 10)
        if bits < 8 or bits > 256 or (bits % 8) != 0:
            raise ValueError(f"invalid integer bit size: {t}")
        return AbiType(kind="uint" if m_int.group(1) else "int", bits=bits)

    raise ValueError(f"unsupported ABI type: {raw_type}")


def format_type(t: AbiType) -> str:
    if t.kind == "array":
        if t.item is None:
            raise ValueError("array type is missing its item type")
        return f"{format_type(t.item)}[]"
    if t.kind in {"address", "bool", "string"}:
        return t.kind
    if t.kind == "bytes_dyn":
        return "bytes"
    if t.kind == "bytes_fixed":
        return f"bytes{t.size}"
    if t.kind in {"uint", "int"}:
        return f"{t.kind}{t.bits}"
    raise ValueError(f"unsupported abi type: {t.kind}")


def is_dynamic(t: AbiType) -> bool:
    return t.kind in {"bytes_dyn", "string", "array"}


def default_value(t: AbiType) -> Any:
    """Value used for an optional field that is absent from a log."""
    if t.kind == "array":
        return []
    if t.kind == "address":
        return ZERO_ADDRESS
    if t.kind == "bool":
        return False
    if t.kind in {"uint", "int"}:
        return "0"
    if t.kind == "string":
        return ""
    if t.kind == "bytes_dyn":
        return "0x"
    if t.kind == "bytes_fixed":
        return "0x" + "00" * int(t.size or 0)
    raise ValueError(f"no default for abi type: {t.kind}")


def parse_event_declaration(declaration: str) -> EventDeclaration:
    """Parse ``Name(type [indexed] name, ...)`` into an ``EventDeclaration``."""
    raw = str(declaration).strip()
    m = SIG_RE.fullmatch(raw)
    if not m:
        raise ValueError("event declaration must look like EventName(type indexed name, ...)")

    event_name = m.group(1)
    args: list[EventArg] = []
    for idx, token in enumerate(_split_csv(m.group(2))):
        parts = token.split()
        arg_type = parse_type(parts[0])
        modifiers = parts[1:]
        is_indexed = "indexed" in modifiers
        names = [p for p in modifiers if p != "indexed"]
        if len(names) > 1:
            raise ValueError(f"unexpected tokens in event argument: {token}")
        args.append(EventArg(name=names[0] if names else f"arg{idx}", type=arg_type, indexed=is_indexed))

    canonical = f"{event_name}({','.join(format_type(arg.type) for arg in args)})"
    return EventDeclaration(name=event_name, args=tuple(args), canonical=canonical)


def event_topic0(declaration: str) -> str:
    return parse_event_declaration(declaration).topic0


# -- encoding ---------------------------------------------------------------


def _to_word(value: int) -> bytes:
    return value.to_bytes(32, "big", signed=False)


def _left_pad(data: bytes, size: int = 32) -> bytes:
    if len(data) > size:
        raise ValueError("value exceeds abi word size")
    return b"\x00" * (size - len(data)) + data


def _right_pad(data: bytes, size: int = 32) -> bytes:
    pad = (size - (len(data) % size)) % size
    return data + (b"\x00" * pad)


def _parse_int_like(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("numeric value cannot be boolean")
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError("numeric value must be int or non-empty string")
    raw = value.strip()
    negative = raw.startswith("-")
    digits = raw[1:] if negative else raw
    parsed = int(digits, 16) if digits.startswith("0x") else int(digits, 10)
    return -parsed if negative else parsed


def parse_hex_bytes(value: Any, *, field: str) -> bytes:
    if not isinstance(value, str) or not HEX_RE.fullmatch(value):
        raise ValueError(f"{field} must be 0x-prefixed hex string")
    data = value[2:]
    if len(data) % 2 != 0:
        raise ValueError(f"{field} hex length must be even")
    return bytes.fromhex(data)


def encode_single(t: AbiType, value: Any) -> bytes:
    if t.kind == "address":
        if not isinstance(value, str) or not ADDRESS_RE.fullmatch(value):
            raise ValueError("address value must be 0x-prefixed 20-byte hex string")
        return _left_pad(bytes.fromhex(value[2:]))

    if t.kind == "bool":
        if not isinstance(value, bool):
            raise ValueError("bool value must be boolean")
        return _to_word(int(value))

    if t.kind == "uint":
        as_int = _parse_int_like(value)
        if as_int < 0 or as_int >= (1 << int(t.bits or 256)):
            raise ValueError("uint value out of range for declared bit width")
        return _to_word(as_int)

    if t.kind == "int":
        bits = int(t.bits or 256)
        as_int = _parse_int_like(value)
        if as_int < -(1 << (bits - 1)) or as_int > (1 << (bits - 1)) - 1:
            raise ValueError("int value out of range for declared bit width")
        return _to_word(as_int % (1 << 256))

    if t.kind == "bytes_fixed":
        raw = parse_hex_bytes(value, field="bytesN value")
        if len(raw) != int(t.size or 0):
            raise ValueError(f"bytes{t.size} must be exactly {t.size} bytes")
        return _right_pad(raw)

    if t.kind == "bytes_dyn":
        raw = parse_hex_bytes(value, field="bytes value")
        return _to_word(len(raw)) + _right_pad(raw)

    if t.kind == "string":
        if not isinstance(value, str):
            raise ValueError("string value must be a string")
        raw = value.encode("utf-8")
        return _to_word(len(raw)) + _right_pad(raw)

    if t.kind == "array":
        if not isinstance(value, (list, tuple)):
            raise ValueError("array value must be a list")
        if t.item is None:
            raise ValueError("array type is missing its item type")
        return _to_word(len(value)) + encode_abi([t.item] * len(value), list(value))

    raise ValueError(f"unsupported type for encoding: {t.kind}")


def encode_abi(types: list[AbiType], values: list[Any]) -> bytes:
    if len(types) != len(values):
        raise ValueError(f"expected {len(types)} values, got {len(values)}")

    head_parts: list[bytes] = []
    tail_parts: list[bytes] = []
    head_size = 32 * len(types)

    for t, value in zip(types, values, strict=True):
        encoded = encode_single(t, value)
        if is_dynamic(t):
            offset = head_size + sum(len(part) for part in tail_parts)
            head_parts.append(_to_word(offset))
            tail_parts.append(encoded)
        else:
            head_parts.append(encoded)

    return b"".join(head_parts + tail_parts)


def encode_topic(t: AbiType, value: Any) -> str:
    """Topic word for an indexed argument (dynamic values are hashed)."""
    if is_dynamic(t):
        if t.kind == "string":
            return topic_hash(value)
        raise ValueError("only string is supported for dynamic indexed topics")
    return f"0x{encode_single(t, value).hex()}"


# -- decoding ---------------------------------------------------------------


def decode_static_word(t: AbiType, word: bytes) -> Any:
    if len(word) != 32:
        raise ValueError("abi word must be exactly 32 bytes")

    if t.kind == "address":
        if any(word[:12]):
            raise ValueError("address word has dirty high bytes")
        return f"0x{word[-20:].hex()}"

    if t.kind == "bool":
        val = int.from_bytes(word, "big")
        if val not in {0, 1}:
            raise ValueError("invalid bool abi encoding")
        return bool(val)

    if t.kind == "uint":
        val = int.from_bytes(word, "big")
        if val >= (1 << int(t.bits or 256)):
            raise ValueError("uint value exceeds declared bit width")
        return str(val)

    if t.kind == "int":
        bits = int(t.bits or 256)
        val = int.from_bytes(word, "big", signed=True)
        if val < -(1 << (bits - 1)) or val > (1 << (bits - 1)) - 1:
            raise ValueError("int value exceeds declared bit width")
        return str(val)

    if t.kind == "bytes_fixed":
        return f"0x{word[: int(t.size or 0)].hex()}"

    raise ValueError(f"unsupported static decode type: {t.kind}")


def _read_word(data: bytes, offset: int) -> bytes:
    if offset < 0 or offset + 32 > len(data):
        raise ValueError("abi word out of bounds")
    return data[offset : offset + 32]


def _decode_dynamic(t: AbiType, data: bytes, offset: int) -> Any:
    length = int.from_bytes(_read_word(data, offset), "big")
    start = offset + 32

    if t.kind == "array":
        if t.item is None:
            raise ValueError("array type is missing its item type")
        body = data[start:]
        if length * 32 > len(body):
            raise ValueError("array length exceeds available data")
        return [_decode_at(t.item, body, idx * 32) for idx in range(length)]

    end = start + length
    if end > len(data):
        raise ValueError("dynamic data out of bounds")
    raw = data[start:end]
    if t.kind == "bytes_dyn":
        return f"0x{raw.hex()}"
    if t.kind == "string":
        return raw.decode("utf-8", errors="strict")
    raise ValueError(f"unsupported dynamic decode type: {t.kind}")


def _decode_at(t: AbiType, data: bytes, head_offset: int) -> Any:
    word = _read_word(data, head_offset)
    if is_dynamic(t):
        return _decode_dynamic(t, data, int.from_bytes(word, "big"))
    return decode_static_word(t, word)


def decode_event(
    declaration: EventDeclaration,
    topics: list[str],
    data_hex: str,
    *,
    optional: Iterable[str] = (),
) -> tuple[dict[str, Any], list[str]]:
    """Decode a log against ``declaration``.

    Returns ``(values_by_name, defaulted_names)``. A required argument that is
    missing or malformed raises ``ValueError``; an optional one is replaced by
    ``default_value`` and reported in ``defaulted_names``.
    """
    if not isinstance(topics, list) or not all(isinstance(t, str) and HEX_RE.fullmatch(t) for t in topics):
        raise ValueError("topics must be an array of 0x-prefixed hex strings")
    if not topics:
        raise ValueError("missing topic0")
    if topics[0].lower() != declaration.topic0:
        raise ValueError("topic0 does not match event signature")
    data = parse_hex_bytes(data_hex, field="data")
    optional_names = set(optional)

    values: dict[str, Any] = {}
    defaulted: list[str] = []

    def settle(arg: EventArg, decode: Any) -> None:
        try:
            values[arg.name] = decode()
        except (ValueError, UnicodeDecodeError) as err:
            if arg.name not in optional_names:
                raise ValueError(f"field {arg.name!r}: {err}") from None
            values[arg.name] = default_value(arg.type)
            defaulted.append(arg.name)

    topic_cursor = 1
    for arg in declaration.indexed_args:
        topic = topics[topic_cursor] if topic_cursor < len(topics) else None
        topic_cursor += 1

        def decode_topic(arg: EventArg = arg, topic: str | None = topic) -> Any:
            if topic is None:
                raise ValueError("missing indexed topic")
            word = _left_pad(parse_hex_bytes(topic, field="topic"))
            if is_dynamic(arg.type):
                return f"0x{word.hex()}"
            return decode_static_word(arg.type, word)

        settle(arg, decode_topic)

    for idx, arg in enumerate(declaration.data_args):
        settle(arg, lambda arg=arg, idx=idx: _decode_at(arg.type, data, idx * 32))

    ordered = {arg.name: values[arg.name] for arg in declaration.args}
    return ordered, defaulted
