"""
Forge / scrap / destroy pipeline on top of a metadata registry.

Nothing here writes to the ledger. Every operation returns
WriteInstruction values for the transaction layer to batch and announce:
    forge:   chunks not yet stored (empty when re-forging a stored chain)
    scrap:   empty-value overwrites for every chunk reachable from a key
    destroy: empty-value overwrites for the recomputed chunks found stored

Snapshots are fetched with one search_entries() call per coordinate,
unless the caller passes ``pool`` (a mapping key -> value or entries).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from metal.chain import ChunkRecord, DecodedMetal, ForgedChain, build_chain, decode_chain, lookup_table
from metal.checksum import generate_random_additive_v1, generate_random_additive_v2
from metal.chunk import unpack
from metal.config import DEFAULT_CONFIG
from metal.errors import ChunkLost, KeyCollision
from metal.identity import restore_metadata_hash
from metal.registry import MetadataEntry, MetalCoordinate, Registry, WriteInstruction
from metal.seal import MetalSeal

log = logging.getLogger(__name__)

Pool = Mapping[int, bytes] | Iterable[Any]


@dataclass(frozen=True)
class ForgeResult:
    """Outcome of a forge.

    Attributes:
        key: Head key of the chain.
        additive: The additive actually used. Store it: destroy and
            key verification need it.
        version: Chunk layout version.
        writes: Instructions for chunks not yet stored, in chain order.
        chunks: Every chunk of the chain, in chain order.
        metal_id: Shareable identifier of the chain.
    """

    key: int
    additive: bytes | int
    version: int
    writes: tuple[WriteInstruction, ...]
    chunks: tuple[ChunkRecord, ...]
    metal_id: str


@dataclass(frozen=True)
class VerifyResult:
    max_length: int
    mismatches: int

    @property
    def ok(self) -> bool:
        return self.mismatches == 0


class MetalService:
    """Chain pipeline bound to one registry.

    Usage:
        service = MetalService(registry, load_config())
        result = service.forge(coordinate, payload)
        registry_writer.submit(coordinate, result.writes)
        decoded = service.fetch_by_metal_id(result.metal_id)
    """

    def __init__(
        self,
        registry: Registry,
        config: Mapping[str, Any] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self._config = dict(DEFAULT_CONFIG)
        if config:
            self._config.update(config)
        self._rng = rng or random.Random()

    def _snapshot(self, coordinate: MetalCoordinate, pool: Pool | None) -> dict[int, bytes]:
        if pool is None:
            log.debug("Fetching on-chain chunks at %s", coordinate)
            pool = self.registry.search_entries(coordinate)
        return lookup_table(pool)

    def _version(self, version: int | None) -> int:
        return self._config["version"] if version is None else version

    def _default_additive(self, version: int) -> bytes | str | int:
        return self._config["v1_additive"] if version == 1 else self._config["v2_additive"]

    def _random_additive(self, version: int) -> bytes | int:
        if version == 1:
            return generate_random_additive_v1(self._rng)
        return generate_random_additive_v2(self._rng)

    @staticmethod
    def _text(text: str | None, seal: MetalSeal | None) -> str | None:
        if seal is None:
            return text
        if text is not None:
            raise ValueError("Pass either text or seal, not both")
        return seal.stringify()

    @staticmethod
    def _foreign_collision(chain: ForgedChain, table: dict[int, bytes]) -> int | None:
        """First chunk key already holding a different value, if any."""
        for chunk in chain.chunks:
            stored = table.get(chunk.key)
            if stored and stored != chunk.value:
                return chunk.key
        return None

    def forge(
        self,
        coordinate: MetalCoordinate,
        payload: bytes,
        additive: bytes | str | int | None = None,
        text: str | None = None,
        seal: MetalSeal | None = None,
        version: int | None = None,
        pool: Pool | None = None,
    ) -> ForgeResult:
        """Build the chain for ``payload`` and the writes it still needs.

        On a key collision (inside the chain, or against a stored value
        that differs) a random additive is drawn and the whole chain is
        rebuilt, at most ``max_retries`` times.

        Raises:
            KeyCollision: Retries exhausted.
            ValueError: Empty payload, bad additive, text on v1.
        """
        version = self._version(version)
        text = self._text(text, seal)
        table = self._snapshot(coordinate, pool)
        if additive is None:
            additive = self._default_additive(version)

        max_retries = self._config["max_retries"]
        chain: ForgedChain | None = None
        for attempt in range(max_retries + 1):
            try:
                candidate = build_chain(payload, version, additive, text)
            except KeyCollision as e:
                collided = e.key
                log.warning(
                    "Scoped key %016X has been conflicted. Trying another additive.", collided
                )
            else:
                collided = self._foreign_collision(candidate, table)
                if collided is None:
                    chain = candidate
                    break
                log.warning(
                    "Scoped key %016X already holds other data. Trying another additive.",
                    collided,
                )
            additive = self._random_additive(version)

        if chain is None:
            raise KeyCollision(collided, additive)

        writes = tuple(
            WriteInstruction(key=c.key, value=c.value, size_delta=len(c.value))
            for c in chain.chunks
            if not table.get(c.key)
        )
        log.debug(
            "Forged %d chunk(s) at %016X, %d to write (additive=%r, attempts=%d)",
            len(chain.chunks), chain.head_key, len(writes), chain.additive, attempt + 1,
        )
        return ForgeResult(
            key=chain.head_key,
            additive=chain.additive,
            version=version,
            writes=writes,
            chunks=chain.chunks,
            metal_id=coordinate.metal_id(chain.head_key),
        )

    def scrap(
        self,
        coordinate: MetalCoordinate,
        key: int,
        pool: Pool | None = None,
    ) -> list[WriteInstruction]:
        """Removal writes for every chunk reachable from ``key``.

        Scrapping twice is a no-op: a head key that is absent (pruned by
        an earlier scrap) or stored empty yields no writes. Chunks left
        behind by a partially applied scrap are reached with destroy().

        Raises:
            ChunkLost: A link after the head is missing; ``partial`` holds
                the removal writes computed before it.
        """
        table = self._snapshot(coordinate, pool)
        writes: list[WriteInstruction] = []
        current = key

        if current not in table:
            log.info("The chunk %016X is already scrapped.", current)
            return writes

        while True:
            value = table.pop(current, None)  # popped: a revisit reads as lost
            if value is None:
                log.error("The chunk %016X lost.", current)
                raise ChunkLost(current, partial=writes)
            if not value:
                log.info("The chunk %016X is already scrapped.", current)
                break

            chunk = unpack(value, current)
            writes.append(WriteInstruction(key=current, value=b"", size_delta=-len(value)))
            if chunk.is_end:
                break
            current = chunk.next_key

        return writes

    def destroy(
        self,
        coordinate: MetalCoordinate,
        payload: bytes,
        additive: bytes | str | int | None = None,
        text: str | None = None,
        seal: MetalSeal | None = None,
        version: int | None = None,
        pool: Pool | None = None,
    ) -> list[WriteInstruction]:
        """Removal writes for the recomputed chunks of ``payload`` that are stored.

        Used to clean up partially forged chains without their head key.
        ``additive`` must be the one the forge actually used.
        """
        version = self._version(version)
        if additive is None:
            additive = self._default_additive(version)
        chain = build_chain(payload, version, additive, self._text(text, seal))
        table = self._snapshot(coordinate, pool)

        writes: list[WriteInstruction] = []
        for chunk in chain.chunks:
            stored = table.get(chunk.key)
            if stored:
                writes.append(WriteInstruction(key=chunk.key, value=b"", size_delta=-len(stored)))
            else:
                log.warning("%016X: The chunk has no on-chain data.", chunk.key)
        return writes

    def check_collision(
        self,
        writes: Iterable[WriteInstruction],
        coordinate: MetalCoordinate,
        pool: Pool | None = None,
    ) -> list[int]:
        """Keys of proposed writes that already exist at ``coordinate``."""
        table = self._snapshot(coordinate, pool)
        collisions = []
        for write in writes:
            if table.get(write.key):
                log.warning("%016X: Already exists on the chain.", write.key)
                collisions.append(write.key)
        return collisions

    def fetch(
        self,
        coordinate: MetalCoordinate,
        key: int,
        pool: Pool | None = None,
    ) -> DecodedMetal:
        return decode_chain(key, self._snapshot(coordinate, pool))

    def fetch_by_metal_id(self, metal_id: str) -> tuple[MetadataEntry, DecodedMetal]:
        """Resolve a Metal ID to its head entry, then decode its chain.

        Raises:
            InvalidIdentity: Malformed Metal ID.
            RegistryError: No entry behind the composite hash.
        """
        head = self.registry.get_entry_by_composite_hash(restore_metadata_hash(metal_id))
        return head, self.fetch(head.coordinate, head.key)

    def verify(
        self,
        coordinate: MetalCoordinate,
        key: int,
        payload: bytes,
        pool: Pool | None = None,
    ) -> VerifyResult:
        """Byte-wise comparison of ``payload`` against the stored chain."""
        decoded = self.fetch(coordinate, key, pool).payload
        max_length = max(len(payload), len(decoded))
        mismatches = sum(
            1
            for i in range(max_length)
            if i >= len(payload) or i >= len(decoded) or payload[i] != decoded[i]
        )
        return VerifyResult(max_length=max_length, mismatches=mismatches)
