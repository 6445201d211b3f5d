"""
Exception taxonomy for chunk decoding, chain traversal and identities.

Every error carries the context a caller needs to log it verbatim
(offending key, expected vs. actual values). ChunkLost additionally
carries whatever was computed before the break as ``partial``.
"""

from __future__ import annotations

from typing import Any


class MetalError(Exception):
    """Base class for all metal errors."""


class MalformedHeader(MetalError):
    """Chunk header cannot be parsed (too short, bad magic, bad version)."""

    def __init__(self, message: str, key: int | None = None) -> None:
        super().__init__(message)
        self.key = key


class MalformedMagic(MalformedHeader):
    """Magic/flags byte is not a recognized value."""

    def __init__(self, key: int | None, magic: int) -> None:
        key_hex = f"{key:016X}" if key is not None else "?"
        super().__init__(f"Malformed header magic 0x{magic:02X} in chunk {key_hex}", key)
        self.magic = magic


class UnsupportedVersion(MalformedHeader):
    """Version byte does not match any known chunk layout."""

    def __init__(self, key: int | None, version: Any) -> None:
        key_hex = f"{key:016X}" if key is not None else "?"
        super().__init__(f"Unsupported chunk version {version!r} in chunk {key_hex}", key)
        self.version = version


class ChecksumMismatch(MetalError):
    """Stored value does not hash to its key. Tampering or corruption."""

    def __init__(self, key: int, actual: int, what: str = "chunk") -> None:
        super().__init__(
            f"The {what} {key:016X} is broken (calculated={actual:016X})"
        )
        self.key = key
        self.expected = key
        self.actual = actual


class ChunkLost(MetalError):
    """A chain link points at a key that is absent from the snapshot."""

    def __init__(self, key: int, partial: Any = None) -> None:
        super().__init__(f"The chunk {key:016X} lost")
        self.key = key
        self.partial = partial


class KeyCollision(MetalError):
    """Two chunks resolve to the same key (within a chain or on-chain)."""

    def __init__(self, key: int, additive: Any = None) -> None:
        super().__init__(f"Scoped key {key:016X} has been conflicted (additive={additive!r})")
        self.key = key
        self.additive = additive


class InvalidIdentity(MetalError):
    """Metal ID cannot be decoded back into a composite hash."""


class MalformedDescriptor(MetalError):
    """Seal JSON is not a recognized descriptor."""


class RegistryError(MetalError):
    """Registry lookup or persistence failed."""
