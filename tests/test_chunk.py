"""
Tests for the checksum functions and the v1/v2 chunk codec.

Byte layouts here are the on-chain wire format: a change that breaks
one of these tests breaks compatibility with stored chains.
"""

from __future__ import annotations

import hashlib
import random

import pytest

from metal import V2_VERSION
from metal.checksum import (
    encode_base36_additive,
    generate_checksum,
    generate_metadata_key,
    generate_random_additive_v1,
    generate_random_additive_v2,
    hex_to_key,
    key_to_hex,
)
from metal.chunk import (
    FLAG_END_CHUNK,
    FLAG_TEXT,
    Magic,
    normalize_additive,
    pack,
    unpack,
)
from metal.errors import (
    ChecksumMismatch,
    MalformedHeader,
    MalformedMagic,
    UnsupportedVersion,
)


# ---------------------------------------------------------------------------
# TestChecksum
# ---------------------------------------------------------------------------

class TestChecksum:

    def test_first_64_bits_little_endian(self):
        digest = hashlib.sha3_256(b"metal").digest()
        assert generate_checksum(b"metal") == int.from_bytes(digest[:8], "little")

    def test_metadata_key_clears_msb(self):
        for i in range(64):
            data = f"chunk-{i}".encode()
            key = generate_metadata_key(data)
            assert key < 2 ** 63
            assert key == generate_checksum(data) & 0x7FFF_FFFF_FFFF_FFFF

    def test_empty_input_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            generate_checksum(b"")
        with pytest.raises(ValueError, match="empty"):
            generate_metadata_key(b"")

    def test_key_hex(self):
        assert key_to_hex(1) == "0000000000000001"
        assert key_to_hex(0xABCDEF0123456789) == "ABCDEF0123456789"
        assert hex_to_key("abcdef0123456789") == 0xABCDEF0123456789

    def test_key_hex_invalid(self):
        with pytest.raises(ValueError):
            key_to_hex(-1)
        with pytest.raises(ValueError):
            key_to_hex(2 ** 64)
        with pytest.raises(ValueError, match="Invalid key"):
            hex_to_key("not-hex")
        with pytest.raises(ValueError, match="Invalid key"):
            hex_to_key("0" * 17)


class TestAdditives:

    def test_base36_encoding(self):
        assert encode_base36_additive(0) == b"0000"
        assert encode_base36_additive(35) == b"000Z"
        assert encode_base36_additive(36) == b"0010"
        assert encode_base36_additive(36 ** 4 - 1) == b"ZZZZ"

    def test_base36_out_of_range(self):
        with pytest.raises(ValueError):
            encode_base36_additive(36 ** 4)

    def test_random_v1_additive(self):
        rng = random.Random(7)
        for _ in range(100):
            additive = generate_random_additive_v1(rng)
            assert len(additive) == 4
            assert all(c in b"0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ" for c in additive)

    def test_random_v2_additive(self):
        rng = random.Random(7)
        for _ in range(100):
            assert 0 <= generate_random_additive_v2(rng) < 0xFFFF

    def test_seeded_rng_is_deterministic(self):
        assert generate_random_additive_v2(random.Random(3)) == generate_random_additive_v2(random.Random(3))

    def test_normalize(self):
        assert normalize_additive(1, None) == b"0000"
        assert normalize_additive(1, "AB12") == b"AB12"
        assert normalize_additive(1, 36) == b"0010"
        assert normalize_additive(2, None) == 0
        assert normalize_additive(2, 0xFFFF) == 0xFFFF

    @pytest.mark.parametrize("version,additive", [
        (1, "ABC"),
        (1, b"ABCDE"),
        (1, 1.5),
        (2, 0x10000),
        (2, -1),
        (2, True),
        (2, "1"),
        (3, 0),
    ])
    def test_normalize_rejects(self, version, additive):
        with pytest.raises(ValueError):
            normalize_additive(version, additive)


# ---------------------------------------------------------------------------
# TestPack
# ---------------------------------------------------------------------------

class TestPackV2:

    def test_layout(self):
        value, key = pack(Magic.CHUNK, 2, 0x1234, 0x0102030405060708, b"hello")

        assert len(value) == 12 + 5
        assert value[0] == 0x00
        assert value[1] == V2_VERSION
        assert value[2:4] == b"\x34\x12"  # additive, little-endian
        assert value[4:12] == bytes.fromhex("0102030405060708")  # next key, big-endian
        assert value[12:] == b"hello"
        assert key == generate_checksum(value)

    def test_flags(self):
        value, _ = pack(Magic.END_CHUNK, 2, 0, 1, b"x")
        assert value[0] == FLAG_END_CHUNK

        value, _ = pack(Magic.CHUNK, 2, 0, 1, b"x", text=True)
        assert value[0] == FLAG_TEXT

        value, _ = pack(Magic.END_CHUNK, 2, 0, 1, b"x", text=True)
        assert value[0] == FLAG_END_CHUNK | FLAG_TEXT

    def test_key_keeps_msb(self):
        """v2 keys are the full checksum; some must have the top bit set."""
        keys = [pack(Magic.CHUNK, 2, i, 0, b"x")[1] for i in range(64)]
        assert any(k >= 2 ** 63 for k in keys)

    def test_max_slice(self):
        value, _ = pack(Magic.END_CHUNK, 2, 0, 0, b"\xff" * 1012)
        assert len(value) == 1024

    def test_oversized_slice(self):
        with pytest.raises(ValueError, match="exceeds"):
            pack(Magic.END_CHUNK, 2, 0, 0, b"\xff" * 1013)


class TestPackV1:

    def test_layout(self):
        value, key = pack(Magic.END_CHUNK, 1, b"AB12", 0xABCDEF, b"aGVsbG8=")

        assert value[0:1] == b"E"
        assert value[1:4] == b"010"
        assert value[4:8] == b"AB12"
        assert value[8:24] == b"0000000000ABCDEF"
        assert value[24:] == b"aGVsbG8="
        assert key == generate_metadata_key(value)

    def test_chunk_magic(self):
        value, _ = pack(Magic.CHUNK, 1, None, 0, b"QQ==")
        assert value[0:1] == b"C"
        assert value[4:8] == b"0000"

    def test_max_slice(self):
        value, _ = pack(Magic.CHUNK, 1, None, 0, b"A" * 1000)
        assert len(value) == 1024

    def test_oversized_slice(self):
        with pytest.raises(ValueError, match="exceeds"):
            pack(Magic.CHUNK, 1, None, 0, b"A" * 1001)

    def test_text_rejected(self):
        with pytest.raises(ValueError, match="text"):
            pack(Magic.CHUNK, 1, None, 0, b"QQ==", text=True)


# ---------------------------------------------------------------------------
# TestUnpack
# ---------------------------------------------------------------------------

class TestUnpack:

    def test_v2_fields(self):
        value, key = pack(Magic.CHUNK, 2, 513, 0xDEADBEEF, b"payload", text=True)
        fields = unpack(value, key)

        assert fields.magic is Magic.CHUNK
        assert fields.version == 2
        assert fields.additive == 513
        assert fields.next_key == 0xDEADBEEF
        assert fields.payload == b"payload"
        assert fields.key == key
        assert fields.text is True
        assert not fields.is_end

    def test_v1_fields(self):
        value, key = pack(Magic.END_CHUNK, 1, b"Z9Z9", 0xCAFE, b"cGF5bG9hZA==")
        fields = unpack(value, key)

        assert fields.magic is Magic.END_CHUNK
        assert fields.version == 1
        assert fields.additive == b"Z9Z9"
        assert fields.next_key == 0xCAFE
        assert fields.payload == b"cGF5bG9hZA=="
        assert fields.text is False
        assert fields.is_end

    def test_wrong_key(self):
        value, key = pack(Magic.CHUNK, 2, 0, 1, b"abc")
        with pytest.raises(ChecksumMismatch) as exc:
            unpack(value, key ^ 1)
        assert exc.value.key == key ^ 1
        assert exc.value.actual == key

    @pytest.mark.parametrize("version", [1, 2])
    def test_any_flipped_byte_is_checksum_mismatch(self, version):
        chunk_bytes = b"QUJDREVGRw==" if version == 1 else b"\x00\x01\x02\x03"
        value, key = pack(Magic.CHUNK, version, None, 0x1122334455667788 >> 1, chunk_bytes)

        for i in range(len(value)):
            tampered = bytearray(value)
            tampered[i] ^= 0xFF
            with pytest.raises(ChecksumMismatch):
                unpack(bytes(tampered), key)

    def test_v1_rejects_unmasked_key(self):
        """A v1 chunk is only valid under its masked (63-bit) key."""
        for i in range(64):
            value, key = pack(Magic.CHUNK, 1, i, 0, b"QQ==")
            full = generate_checksum(value)
            if full != key:
                break
        else:
            pytest.fail("no checksum with the top bit set found")

        with pytest.raises(ChecksumMismatch):
            unpack(value, full)

    def test_unsupported_version(self):
        value = bytes([0x00, 0x32]) + b"\x00" * 10 + b"data"
        key = generate_checksum(value)
        with pytest.raises(UnsupportedVersion) as exc:
            unpack(value, key)
        assert isinstance(exc.value, MalformedHeader)
        assert exc.value.key == key

    def test_malformed_v2_flags(self):
        value = bytes([0x01, V2_VERSION]) + b"\x00" * 10 + b"data"
        key = generate_checksum(value)
        with pytest.raises(MalformedMagic) as exc:
            unpack(value, key)
        assert exc.value.magic == 0x01

    def test_malformed_v1_magic(self):
        value = b"X010" + b"0000" + b"0" * 16 + b"QQ=="
        key = generate_metadata_key(value)
        with pytest.raises(MalformedMagic):
            unpack(value, key)

    def test_malformed_v1_next_key(self):
        value = b"C010" + b"0000" + b"not a hex key!!!" + b"QQ=="
        key = generate_metadata_key(value)
        with pytest.raises(MalformedHeader, match="next key"):
            unpack(value, key)

    def test_too_short(self):
        with pytest.raises(MalformedHeader, match="too short"):
            unpack(b"", 1)
        with pytest.raises(MalformedHeader, match="too short"):
            unpack(b"C010" + b"0" * 7, 1)

    def test_oversized(self):
        value = b"C010" + b"0000" + b"0" * 16 + b"A" * 1001
        with pytest.raises(MalformedHeader, match="exceeds"):
            unpack(value, generate_metadata_key(value))
