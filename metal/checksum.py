"""
Checksum and key functions.

Both functions take the first 64 bits of SHA3-256 as a little-endian
integer. Metadata keys (v1) clear the most significant bit; checksums
(v2 keys, END_CHUNK anchors) keep all 64 bits.
"""

from __future__ import annotations

import hashlib
import random
import re

_KEY_MASK = 0x7FFF_FFFF_FFFF_FFFF
_UINT64_MAX = 0xFFFF_FFFF_FFFF_FFFF

_KEY_HEX_RE = re.compile(r"^[0-9a-fA-F]{1,16}$")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_V1_ADDITIVE_SPACE = 36 ** 4  # 4 base-36 digits
_V2_ADDITIVE_SPACE = 0xFFFF


def generate_checksum(data: bytes) -> int:
    """Return the 64-bit checksum of ``data``."""
    if not data:
        raise ValueError("Input must not be empty")
    digest = hashlib.sha3_256(data).digest()
    return int.from_bytes(digest[:8], "little")


def generate_metadata_key(data: bytes) -> int:
    """Return the 63-bit metadata key of ``data`` (MSB cleared)."""
    return generate_checksum(data) & _KEY_MASK


def key_to_hex(key: int) -> str:
    """Format a key as 16 upper-case hex characters."""
    if not 0 <= key <= _UINT64_MAX:
        raise ValueError(f"Key out of 64-bit range: {key!r}")
    return f"{key:016X}"


def hex_to_key(key_hex: str) -> int:
    """Parse a hex key string. Raises ValueError if it is not 1-16 hex chars."""
    if not isinstance(key_hex, str) or not _KEY_HEX_RE.match(key_hex):
        raise ValueError(f"Invalid key: must be up to 16 hex chars, got {key_hex!r}")
    return int(key_hex, 16)


def encode_base36_additive(value: int) -> bytes:
    """Render an int as the 4 upper-case base-36 digits of a v1 additive."""
    if not 0 <= value < _V1_ADDITIVE_SPACE:
        raise ValueError(f"v1 additive out of range: {value}")
    digits = ""
    for _ in range(4):
        value, rem = divmod(value, 36)
        digits = _BASE36[rem] + digits
    return digits.encode("ascii")


def generate_random_additive_v1(rng: random.Random | None = None) -> bytes:
    return encode_base36_additive((rng or random).randrange(_V1_ADDITIVE_SPACE))


def generate_random_additive_v2(rng: random.Random | None = None) -> int:
    return (rng or random).randrange(_V2_ADDITIVE_SPACE)
