"""
Chain builder and walker.

Building runs tail-to-head: the last slice becomes the END_CHUNK whose
next key is the checksum of the whole (combined) payload, and every
earlier slice embeds the key just computed for its successor. The head
key is therefore only known once the whole pass has finished.

Walking starts at the head key and follows next keys through a
pre-fetched snapshot. Each visited key is removed from the lookup table,
so a cycle ends in ChunkLost instead of looping.

v2 descriptor (text) layout inside the combined payload:
    [text bytes][0x00 padding up to the chunk boundary][payload bytes]
Text chunks carry the TEXT flag; the first 0x00 terminates the text.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from metal.checksum import generate_checksum
from metal.chunk import ChunkFields, Magic, normalize_additive, pack, payload_max_size, unpack
from metal.errors import ChecksumMismatch, ChunkLost, KeyCollision, MalformedDescriptor, MalformedHeader
from metal.seal import MetalSeal

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkRecord:
    """One packed chunk, ready to be written under ``key``."""

    key: int
    value: bytes
    magic: Magic
    text: bool = False


@dataclass(frozen=True)
class ForgedChain:
    """Result of one chain building pass (chunks in forward order)."""

    head_key: int
    additive: bytes | int
    version: int
    chunks: tuple[ChunkRecord, ...]
    text_chunks: int = 0

    @property
    def keys(self) -> list[int]:
        return [c.key for c in self.chunks]


@dataclass(frozen=True)
class DecodedMetal:
    """Payload reassembled from a chain."""

    payload: bytes
    text: str | None
    head: ChunkFields
    chunk_count: int

    @property
    def version(self) -> int:
        return self.head.version

    @property
    def additive(self) -> bytes | int:
        return self.head.additive

    @property
    def seal(self) -> MetalSeal | None:
        """The descriptor, if the text is a seal. Raises MalformedDescriptor otherwise."""
        if self.text is None:
            return None
        return MetalSeal.parse(self.text)


def combine_payload(payload: bytes, text: str | None = None) -> tuple[bytes, int]:
    """Splice descriptor text ahead of a v2 payload.

    Returns (combined bytes, number of leading text-only chunks).
    """
    if not text:
        return bytes(payload), 0
    if "\x00" in text:
        raise ValueError("Text must not contain NUL characters")

    size = payload_max_size(2)
    text_bytes = text.encode("utf-8")
    text_chunks = -(-len(text_bytes) // size)
    return text_bytes.ljust(text_chunks * size, b"\x00") + bytes(payload), text_chunks


def build_chain(
    payload: bytes,
    version: int = 2,
    additive: bytes | str | int | None = None,
    text: str | None = None,
) -> ForgedChain:
    """Split a payload into chained chunks with a single additive.

    Raises:
        KeyCollision: Two chunks of this pass resolved to the same key.
        ValueError: Empty payload, text on v1, bad additive.
    """
    additive = normalize_additive(version, additive)

    if version == 1:
        if text:
            raise ValueError("Version 1 chains cannot carry text")
        anchor = generate_checksum(payload)
        data = base64.b64encode(payload)
        text_chunks = 0
    else:
        data, text_chunks = combine_payload(payload, text)
        anchor = generate_checksum(data)

    size = payload_max_size(version)
    slices = [data[i:i + size] for i in range(0, len(data), size)]
    last = len(slices) - 1

    records: list[ChunkRecord] = []
    seen: set[int] = set()
    next_key = anchor
    for index, chunk_bytes in reversed(list(enumerate(slices))):
        magic = Magic.END_CHUNK if index == last else Magic.CHUNK
        is_text = index < text_chunks
        value, key = pack(magic, version, additive, next_key, chunk_bytes, is_text)
        if key in seen:
            raise KeyCollision(key, additive)
        seen.add(key)
        records.append(ChunkRecord(key=key, value=value, magic=magic, text=is_text))
        next_key = key

    records.reverse()
    return ForgedChain(
        head_key=next_key,
        additive=additive,
        version=version,
        chunks=tuple(records),
        text_chunks=text_chunks,
    )


def calculate_metadata_key(
    payload: bytes,
    additive: bytes | str | int | None = None,
    version: int = 2,
    text: str | None = None,
) -> int:
    """Head key the payload would be forged under with this additive."""
    return build_chain(payload, version, additive, text).head_key


def verify_metadata_key(
    key: int,
    payload: bytes,
    additive: bytes | str | int | None = None,
    version: int = 2,
    text: str | None = None,
) -> bool:
    return calculate_metadata_key(payload, additive, version, text) == key


def lookup_table(pool: Mapping[int, bytes] | Iterable[Any]) -> dict[int, bytes]:
    """Map key -> value from a mapping or from entries with ``key``/``value``."""
    if isinstance(pool, Mapping):
        return {int(k): bytes(v) for k, v in pool.items()}
    return {entry.key: bytes(entry.value) for entry in pool}


def decode_chain(head_key: int, pool: Mapping[int, bytes] | Iterable[Any]) -> DecodedMetal:
    """Follow the chain from ``head_key`` and reassemble its payload.

    Raises:
        ChunkLost: A link is missing; ``partial`` holds the bytes read so far.
        ChecksumMismatch: A chunk or the END_CHUNK anchor does not verify.
        MalformedHeader: Bad chunk header or mixed chunk versions.
    """
    table = lookup_table(pool)

    combined = bytearray()
    text_buf = bytearray()
    payload_buf = bytearray()
    head: ChunkFields | None = None
    chunk: ChunkFields | None = None
    count = 0
    current = head_key

    while True:
        value = table.pop(current, None)  # popped: a revisit reads as lost
        if value is None:
            log.error("The chunk %016X lost", current)
            raise ChunkLost(current, partial=bytes(payload_buf))

        chunk = unpack(value, current)
        if head is None:
            head = chunk
        elif chunk.version != head.version:
            raise MalformedHeader(
                f"Inconsistent chunk versions: {chunk.key:016X} is v{chunk.version}, "
                f"head is v{head.version}",
                chunk.key,
            )

        count += 1
        combined += chunk.payload
        if chunk.text:
            text_buf += chunk.payload
        else:
            payload_buf += chunk.payload

        if chunk.is_end:
            break
        current = chunk.next_key

    if head.version == 1:
        try:
            payload = base64.b64decode(bytes(payload_buf), validate=True)
        except binascii.Error as e:
            raise MalformedHeader(f"Chain {head_key:016X} carries invalid Base64", head_key) from e
        anchor_source = payload
    else:
        payload = bytes(payload_buf)
        anchor_source = bytes(combined)

    actual = generate_checksum(anchor_source)
    if actual != chunk.next_key:
        raise ChecksumMismatch(chunk.next_key, actual, what="payload")

    text = None
    if text_buf:
        raw_text = bytes(text_buf).split(b"\x00", 1)[0]
        try:
            text = raw_text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedDescriptor(f"Chain {head_key:016X} text is not UTF-8") from e

    log.debug("Decoded %d chunk(s) from %016X (%d bytes)", count, head_key, len(payload))
    return DecodedMetal(payload=payload, text=text, head=head, chunk_count=count)
