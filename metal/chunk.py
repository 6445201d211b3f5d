"""
Chunk codec. Packs and unpacks one metadata value.

Version 1 (ASCII header, Base64 payload slice):
    [magic "C"/"E" (1)] [version "010" (3)] [additive (4 ASCII)]
    [next key, 16 upper-case hex chars (16)] [payload (<=1000)]
    key = checksum(value) with the MSB cleared

Version 2 (binary header, raw payload slice):
    [flags (1): 0x80 END_CHUNK | 0x40 TEXT] [version 0x31 (1)]
    [additive, uint16 LE (2)] [next key, uint64 BE (8)] [payload (<=1012)]
    key = checksum(value)

For an END_CHUNK the next key field holds the checksum of the whole
(combined) payload instead of a pointer.

Both layouts decode to the same ChunkFields value, tagged with ``version``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum

from metal import (
    CHUNK_MAX_SIZE,
    V1_VERSION,
    V1_HEADER_SIZE,
    V1_CHUNK_PAYLOAD_MAX_SIZE,
    V1_DEFAULT_ADDITIVE,
    V2_VERSION,
    V2_HEADER_SIZE,
    V2_CHUNK_PAYLOAD_MAX_SIZE,
    V2_DEFAULT_ADDITIVE,
)
from metal.checksum import (
    encode_base36_additive,
    generate_checksum,
    generate_metadata_key,
    hex_to_key,
    key_to_hex,
)
from metal.errors import ChecksumMismatch, MalformedHeader, MalformedMagic, UnsupportedVersion

_KEY_MASK = 0x7FFF_FFFF_FFFF_FFFF

# v2 flags byte
FLAG_END_CHUNK = 0x80
FLAG_TEXT = 0x40
_V2_FLAGS_MASK = FLAG_END_CHUNK | FLAG_TEXT

# v2 header: flags, version, additive (LE); next key is big-endian and read separately
_V2_HEADER_STRUCT = struct.Struct("<BBH8s")


class Magic(Enum):
    CHUNK = "C"
    END_CHUNK = "E"


@dataclass(frozen=True)
class ChunkFields:
    """Logical fields of one decoded chunk, common to both layouts.

    Attributes:
        magic: CHUNK or END_CHUNK.
        version: 1 or 2.
        additive: 4 ASCII bytes (v1) or an unsigned 16-bit int (v2).
        next_key: Key of the next chunk, or the payload checksum for END_CHUNK.
        payload: The slice carried by this chunk (Base64 text for v1).
        key: The chunk's own key (checksum of the stored value).
        text: True when the slice belongs to the descriptor (v2 only).
    """

    magic: Magic
    version: int
    additive: bytes | int
    next_key: int
    payload: bytes
    key: int
    text: bool = False

    @property
    def is_end(self) -> bool:
        return self.magic is Magic.END_CHUNK


def payload_max_size(version: int) -> int:
    """Maximum slice size for a chunk layout version."""
    if version == 1:
        return V1_CHUNK_PAYLOAD_MAX_SIZE
    if version == 2:
        return V2_CHUNK_PAYLOAD_MAX_SIZE
    raise ValueError(f"Unknown chunk version: {version!r}")


def normalize_additive(version: int, additive: bytes | str | int | None) -> bytes | int:
    """Coerce an additive into the representation stored by ``version``.

    v1 takes 4 ASCII characters (an int is rendered as 4 base-36 digits),
    v2 takes an unsigned 16-bit integer. None selects the default.
    """
    if version == 1:
        if additive is None:
            return V1_DEFAULT_ADDITIVE
        if isinstance(additive, int) and not isinstance(additive, bool):
            return encode_base36_additive(additive)
        if isinstance(additive, str):
            additive = additive.encode("ascii")
        if not isinstance(additive, (bytes, bytearray)) or len(additive) != 4:
            raise ValueError(f"v1 additive must be 4 ASCII bytes, got {additive!r}")
        return bytes(additive)

    if version == 2:
        if additive is None:
            return V2_DEFAULT_ADDITIVE
        if isinstance(additive, bool) or not isinstance(additive, int):
            raise ValueError(f"v2 additive must be an integer, got {additive!r}")
        if not 0 <= additive <= 0xFFFF:
            raise ValueError(f"v2 additive out of range: {additive}")
        return additive

    raise ValueError(f"Unknown chunk version: {version!r}")


def _pack_v1(magic: Magic, additive: bytes, next_key: int, chunk_bytes: bytes) -> bytes:
    if len(chunk_bytes) > V1_CHUNK_PAYLOAD_MAX_SIZE:
        raise ValueError(
            f"v1 slice of {len(chunk_bytes)} bytes exceeds {V1_CHUNK_PAYLOAD_MAX_SIZE}"
        )
    return (
        magic.value.encode("ascii")
        + V1_VERSION
        + additive
        + key_to_hex(next_key).encode("ascii")
        + chunk_bytes
    )


def _pack_v2(
    magic: Magic, additive: int, next_key: int, chunk_bytes: bytes, text: bool,
) -> bytes:
    if len(chunk_bytes) > V2_CHUNK_PAYLOAD_MAX_SIZE:
        raise ValueError(
            f"v2 slice of {len(chunk_bytes)} bytes exceeds {V2_CHUNK_PAYLOAD_MAX_SIZE}"
        )
    flags = (FLAG_END_CHUNK if magic is Magic.END_CHUNK else 0) | (FLAG_TEXT if text else 0)
    header = _V2_HEADER_STRUCT.pack(flags, V2_VERSION, additive, next_key.to_bytes(8, "big"))
    return header + chunk_bytes


def pack(
    magic: Magic,
    version: int,
    additive: bytes | str | int | None,
    next_key: int,
    chunk_bytes: bytes,
    text: bool = False,
) -> tuple[bytes, int]:
    """Build one chunk value. Returns (value, key). Pure."""
    additive = normalize_additive(version, additive)
    if version == 1:
        if text:
            raise ValueError("Version 1 chunks cannot carry text")
        value = _pack_v1(magic, additive, next_key, chunk_bytes)
        key = generate_metadata_key(value)
    else:
        value = _pack_v2(magic, additive, next_key, chunk_bytes, text)
        key = generate_checksum(value)

    if len(value) > CHUNK_MAX_SIZE:
        raise ValueError(f"Chunk of {len(value)} bytes exceeds {CHUNK_MAX_SIZE}")
    return value, key


def _unpack_v1(value: bytes, key: int) -> ChunkFields:
    if len(value) < V1_HEADER_SIZE:
        raise MalformedHeader(f"v1 chunk {key:016X} is shorter than its header", key)

    magic_byte = value[0:1]
    if magic_byte == b"C":
        magic = Magic.CHUNK
    elif magic_byte == b"E":
        magic = Magic.END_CHUNK
    else:
        raise MalformedMagic(key, value[0])

    try:
        next_key = hex_to_key(value[8:V1_HEADER_SIZE].decode("ascii"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedHeader(f"v1 chunk {key:016X} has a malformed next key", key) from e

    return ChunkFields(
        magic=magic,
        version=1,
        additive=value[4:8],
        next_key=next_key,
        payload=value[V1_HEADER_SIZE:V1_HEADER_SIZE + V1_CHUNK_PAYLOAD_MAX_SIZE],
        key=key,
    )


def _unpack_v2(value: bytes, key: int) -> ChunkFields:
    flags, _version, additive, next_key_bytes = _V2_HEADER_STRUCT.unpack_from(value)
    if flags & ~_V2_FLAGS_MASK:
        raise MalformedMagic(key, flags)

    return ChunkFields(
        magic=Magic.END_CHUNK if flags & FLAG_END_CHUNK else Magic.CHUNK,
        version=2,
        additive=additive,
        next_key=int.from_bytes(next_key_bytes, "big"),
        payload=value[V2_HEADER_SIZE:V2_HEADER_SIZE + V2_CHUNK_PAYLOAD_MAX_SIZE],
        key=key,
        text=bool(flags & FLAG_TEXT),
    )


def unpack(value: bytes, expected_key: int) -> ChunkFields:
    """Parse and validate a stored chunk value against its key.

    The checksum is verified before the header is interpreted, so any
    altered byte (version byte included) is reported as ChecksumMismatch.

    Raises:
        MalformedHeader: Value too short or oversized, bad next key.
        ChecksumMismatch: Value does not hash to ``expected_key``.
        UnsupportedVersion: Unknown version byte.
        MalformedMagic: Unknown magic/flags byte.
    """
    value = bytes(value)
    if len(value) < V2_HEADER_SIZE:
        raise MalformedHeader(
            f"Chunk {expected_key:016X} is too short ({len(value)} bytes)", expected_key
        )
    if len(value) > CHUNK_MAX_SIZE:
        raise MalformedHeader(
            f"Chunk {expected_key:016X} exceeds {CHUNK_MAX_SIZE} bytes", expected_key
        )

    checksum = generate_checksum(value)
    if expected_key not in (checksum, checksum & _KEY_MASK):
        raise ChecksumMismatch(expected_key, checksum)

    if value[1:4] == V1_VERSION:
        if expected_key != checksum & _KEY_MASK:
            raise ChecksumMismatch(expected_key, checksum & _KEY_MASK)
        return _unpack_v1(value, expected_key)

    if value[1] == V2_VERSION:
        if expected_key != checksum:
            raise ChecksumMismatch(expected_key, checksum)
        return _unpack_v2(value, expected_key)

    raise UnsupportedVersion(expected_key, value[1:4])
