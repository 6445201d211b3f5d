"""
Metal identity — composite metadata hash and the shareable Metal ID.

    composite hash = SHA3-256(source(24) + target(24) + key(8, LE)
                              + target id(8, LE) + type(1))
    Metal ID       = Base58(0x0B2A + composite hash)

The Metal ID round-trips to the composite hash only. Recovering the
individual coordinate fields requires a registry lookup by that hash.
"""

from __future__ import annotations

import base64
import binascii
import hashlib

import base58

from metal import METAL_ID_HEADER_HEX, METAL_ID_HASH_SIZE
from metal.errors import InvalidIdentity

ADDRESS_SIZE = 24
ADDRESS_TEXT_LENGTH = 39

_METAL_ID_HEADER = bytes.fromhex(METAL_ID_HEADER_HEX)


def encode_address(raw: bytes) -> str:
    """Encode 24 raw address bytes as 39 Base32 characters."""
    if len(raw) != ADDRESS_SIZE:
        raise ValueError(f"Address must be {ADDRESS_SIZE} bytes, got {len(raw)}")
    # 25 bytes encode to exactly 40 chars; the trailing pad char is dropped
    return base64.b32encode(bytes(raw) + b"\x00").decode("ascii")[:ADDRESS_TEXT_LENGTH]


def decode_address(address: str | bytes) -> bytes:
    """Return the 24 raw bytes of an address given as text or bytes."""
    if isinstance(address, (bytes, bytearray)):
        if len(address) != ADDRESS_SIZE:
            raise ValueError(f"Address must be {ADDRESS_SIZE} bytes, got {len(address)}")
        return bytes(address)

    plain = address.replace("-", "").strip().upper()
    if len(plain) != ADDRESS_TEXT_LENGTH:
        raise ValueError(f"Invalid address: {address!r}")
    try:
        return base64.b32decode(plain + "A")[:ADDRESS_SIZE]
    except binascii.Error as e:
        raise ValueError(f"Invalid address: {address!r}") from e


def calculate_metadata_hash(
    metadata_type: int,
    source: str | bytes,
    target: str | bytes,
    target_id: int | None,
    key: int,
) -> str:
    """Composite hash of a metadata entry coordinate, as 64 upper-case hex chars."""
    hasher = hashlib.sha3_256()
    hasher.update(decode_address(source))
    hasher.update(decode_address(target))
    hasher.update(key.to_bytes(8, "little"))
    hasher.update((target_id or 0).to_bytes(8, "little"))
    hasher.update(int(metadata_type).to_bytes(1, "little"))
    return hasher.hexdigest().upper()


def metal_id_from_hash(composite_hash: str) -> str:
    try:
        hash_bytes = bytes.fromhex(composite_hash)
    except ValueError as e:
        raise InvalidIdentity(f"Invalid composite hash: {composite_hash!r}") from e
    if len(hash_bytes) != METAL_ID_HASH_SIZE:
        raise InvalidIdentity(f"Composite hash must be {METAL_ID_HASH_SIZE} bytes")
    return base58.b58encode(_METAL_ID_HEADER + hash_bytes).decode("ascii")


def calculate_metal_id(
    metadata_type: int,
    source: str | bytes,
    target: str | bytes,
    target_id: int | None,
    key: int,
) -> str:
    """Shareable Metal ID for the chain whose head chunk is at ``key``."""
    return metal_id_from_hash(
        calculate_metadata_hash(metadata_type, source, target, target_id, key)
    )


def restore_metadata_hash(metal_id: str) -> str:
    """Return the composite hash (64 upper-case hex chars) behind a Metal ID.

    Raises:
        InvalidIdentity: Not Base58, wrong header, or wrong length.
    """
    try:
        raw = base58.b58decode(metal_id)
    except ValueError as e:
        raise InvalidIdentity(f"Invalid metal ID: {metal_id!r}") from e

    if not raw.startswith(_METAL_ID_HEADER):
        raise InvalidIdentity(f"Invalid metal ID: {metal_id!r}")
    hash_bytes = raw[len(_METAL_ID_HEADER):]
    if len(hash_bytes) != METAL_ID_HASH_SIZE:
        raise InvalidIdentity(f"Invalid metal ID length: {metal_id!r}")
    return hash_bytes.hex().upper()
