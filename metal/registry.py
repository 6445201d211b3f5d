"""
Metadata registry boundary.

The ledger's registry is external; the pipeline only needs two reads
(a batched search per coordinate, a lookup by composite hash) and emits
WriteInstruction values for the transaction layer to submit.

MemoryRegistry and FileRegistry implement the read side locally and can
apply write instructions the way the ledger does (a zero-length value
prunes the entry). FileRegistry persists a JSON snapshot with atomic
writes (temp file + os.replace).
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any

from metal.checksum import hex_to_key, key_to_hex
from metal.errors import RegistryError
from metal.identity import (
    calculate_metadata_hash,
    calculate_metal_id,
    decode_address,
    encode_address,
)


class MetadataType(IntEnum):
    ACCOUNT = 0
    MOSAIC = 1
    NAMESPACE = 2


@dataclass(frozen=True)
class MetalCoordinate:
    """Where a chain lives: (type, source, target, target id).

    Addresses are normalized to their 39-char Base32 form, so bytes and
    dashed text compare equal.
    """

    type: MetadataType
    source: str
    target: str
    target_id: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", MetadataType(self.type))
        object.__setattr__(self, "source", encode_address(decode_address(self.source)))
        object.__setattr__(self, "target", encode_address(decode_address(self.target)))

        if self.type == MetadataType.ACCOUNT:
            if self.target_id is not None:
                raise ValueError("Account metadata cannot have a target id")
        elif self.target_id is None:
            raise ValueError(f"{self.type.name.lower()} metadata requires a target id")
        elif not 0 <= self.target_id <= 0xFFFF_FFFF_FFFF_FFFF:
            raise ValueError(f"Target id out of 64-bit range: {self.target_id!r}")

    def metadata_hash(self, key: int) -> str:
        return calculate_metadata_hash(self.type, self.source, self.target, self.target_id, key)

    def metal_id(self, key: int) -> str:
        return calculate_metal_id(self.type, self.source, self.target, self.target_id, key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": int(self.type),
            "source": self.source,
            "target": self.target,
            "target_id": key_to_hex(self.target_id) if self.target_id is not None else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MetalCoordinate:
        target_id = d.get("target_id")
        return cls(
            type=MetadataType(d["type"]),
            source=d["source"],
            target=d["target"],
            target_id=hex_to_key(target_id) if target_id is not None else None,
        )


@dataclass(frozen=True)
class MetadataEntry:
    """One stored key/value entry at a coordinate."""

    coordinate: MetalCoordinate
    key: int
    value: bytes

    @property
    def composite_hash(self) -> str:
        return self.coordinate.metadata_hash(self.key)


@dataclass(frozen=True)
class WriteInstruction:
    """A metadata write for the transaction layer.

    ``value`` is the new value; ``size_delta`` is new length minus the
    stored length, negative (and value empty) for a removal.
    """

    key: int
    value: bytes
    size_delta: int

    @property
    def is_removal(self) -> bool:
        return not self.value


class Registry(ABC):
    """Read interface of the metadata registry."""

    @abstractmethod
    def search_entries(self, coordinate: MetalCoordinate) -> list[MetadataEntry]:
        """All entries stored at ``coordinate`` (one batched query)."""

    @abstractmethod
    def get_entry_by_composite_hash(self, composite_hash: str) -> MetadataEntry:
        """The entry behind a composite hash. Raises RegistryError if unknown."""


class MemoryRegistry(Registry):
    """Dictionary-backed registry keyed by composite hash."""

    def __init__(self, entries: Iterable[MetadataEntry] = ()) -> None:
        self._entries: dict[str, MetadataEntry] = {}
        for entry in entries:
            self._entries[entry.composite_hash] = entry

    def search_entries(self, coordinate: MetalCoordinate) -> list[MetadataEntry]:
        return [e for e in self._entries.values() if e.coordinate == coordinate]

    def get_entry_by_composite_hash(self, composite_hash: str) -> MetadataEntry:
        entry = self._entries.get(composite_hash.upper())
        if entry is None:
            raise RegistryError(f"Metadata not found: {composite_hash}")
        return entry

    def put(self, coordinate: MetalCoordinate, key: int, value: bytes) -> MetadataEntry:
        """Store a value directly, bypassing size-delta checks."""
        entry = MetadataEntry(coordinate, key, bytes(value))
        self._entries[entry.composite_hash] = entry
        return entry

    def apply(self, coordinate: MetalCoordinate, writes: Iterable[WriteInstruction]) -> None:
        """Apply write instructions. Zero-length values prune the entry.

        Raises RegistryError if an instruction's size_delta disagrees with
        the stored value; instructions before it stay applied.
        """
        for write in writes:
            composite_hash = coordinate.metadata_hash(write.key)
            current = self._entries.get(composite_hash)
            current_size = len(current.value) if current else 0
            expected_delta = len(write.value) - current_size
            if write.size_delta != expected_delta:
                raise RegistryError(
                    f"Size delta mismatch for {key_to_hex(write.key)}: "
                    f"got {write.size_delta}, expected {expected_delta}"
                )
            if write.value:
                self._entries[composite_hash] = MetadataEntry(coordinate, write.key, write.value)
            else:
                self._entries.pop(composite_hash, None)

    def entries(self) -> list[MetadataEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


class FileRegistry(MemoryRegistry):
    """MemoryRegistry persisted as a JSON snapshot file.

    Usage:
        registry = FileRegistry(tmp_path / "registry.json")
        registry.apply(coordinate, result.writes)
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        """Read the snapshot. A missing or corrupt file loads as empty."""
        if not self.path.is_file():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            for item in raw.get("entries", []):
                entry = MetadataEntry(
                    coordinate=MetalCoordinate.from_dict(item["coordinate"]),
                    key=hex_to_key(item["key"]),
                    value=base64.b64decode(item["value"], validate=True),
                )
                self._entries[entry.composite_hash] = entry
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError,
                AttributeError, binascii.Error):
            self._entries = {}

    def _save(self) -> None:
        """Atomically write the snapshot (temp + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(
            {
                "entries": [
                    {
                        "coordinate": e.coordinate.to_dict(),
                        "key": key_to_hex(e.key),
                        "value": base64.b64encode(e.value).decode("ascii"),
                    }
                    for _, e in sorted(self._entries.items())
                ],
            },
            indent=2,
        )
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix=".registry_"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def put(self, coordinate: MetalCoordinate, key: int, value: bytes) -> MetadataEntry:
        entry = super().put(coordinate, key, value)
        self._save()
        return entry

    def apply(self, coordinate: MetalCoordinate, writes: Iterable[WriteInstruction]) -> None:
        try:
            super().apply(coordinate, writes)
        finally:
            self._save()
