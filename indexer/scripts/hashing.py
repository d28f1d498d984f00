"""Pure-python keccak-256 used for event topic hashes."""

from __future__ import annotations

from functools import lru_cache

_MASK_64 = (1 << 64) - 1
_KECCAK_ROUNDS = 24
_KECCAK_RATE_BYTES = 136  # keccak-256 bitrate

_ROTATION_OFFSETS = [
    [0, 36, 3, 41, 18],
    [1, 44, 10, 45, 2],
    [62, 6, 43, 15, 61],
    [28, 55, 25, 21, 56],
    [27, 20, 39, 8, 14],
]

_ROUND_CONSTANTS = [
    0x0000000000000001,
    0x0000000000008082,
    0x800000000000808A,
    0x8000000080008000,
    0x000000000000808B,
    0x0000000080000001,
    0x8000000080008081,
    0x8000000000008009,
    0x000000000000008A,
    0x0000000000000088,
    0x0000000080008009,
    0x000000008000000A,
    0x000000008000808B,
    0x800000000000008B,
    0x8000000000008089,
    0x8000000000008003,
    0x8000000000008002,
    0x8000000000000080,
    0x000000000000800A,
    0x800000008000000A,
    0x8000000080008081,
    0x8000000000008080,
    0x0000000080000001,
    0x8000000080008008,
]


def _rotl64(value: int, shift: int) -> int:
    shift %= 64
    return ((value << shift) | (value >> (64 - shift))) & _MASK_64


def _permute(state: list[int]) -> None:
    for round_constant in _ROUND_CONSTANTS[:_KECCAK_ROUNDS]:
        parity = [state[x] ^ state[x + 5] ^ state[x + 10] ^ state[x + 15] ^ state[x + 20] for x in range(5)]
        for x in range(5):
            mix = parity[(x - 1) % 5] ^ _rotl64(parity[(x + 1) % 5], 1)
            for y in range(0, 25, 5):
                state[x + y] ^= mix

        rotated = [0] * 25
        for x in range(5):
            for y in range(5):
                rotated[y + 5 * ((2 * x + 3 * y) % 5)] = _rotl64(state[x + 5 * y], _ROTATION_OFFSETS[x][y])

        for y in range(0, 25, 5):
            row = rotated[y : y + 5]
            for x in range(5):
                state[x + y] = (row[x] ^ ((~row[(x + 1) % 5]) & row[(x + 2) % 5])) & _MASK_64

        state[0] ^= round_constant


def keccak256(data: bytes) -> bytes:
    state = [0] * 25
    padded = bytearray(data)
    padded.append(0x01)
    padded.extend(b"\x00" * ((-len(padded)) % _KECCAK_RATE_BYTES))
    padded[-1] |= 0x80

    lanes = _KECCAK_RATE_BYTES // 8
    for offset in range(0, len(padded), _KECCAK_RATE_BYTES):
        for i in range(lanes):
            start = offset + i * 8
            state[i] ^= int.from_bytes(padded[start : start + 8], "little")
        _permute(state)

    # 32 output bytes fit in one squeeze of the 136-byte rate.
    return b"".join(lane.to_bytes(8, "little") for lane in state[:4])


@lru_cache(maxsize=256)
def topic_hash(canonical_signature: str) -> str:
    return f"0x{keccak256(canonical_signature.encode('utf-8')).hex()}"
