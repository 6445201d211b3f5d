"""
Metal — arbitrary binary payloads stored in a ledger's metadata registry.

Architecture:
    Chunk:    [header] + [payload slice] <= 1024 bytes, one metadata entry
    Key:      64-bit checksum of the chunk value (content-addressed)
    Chain:    chunks linked by next-key, the END_CHUNK holds a payload checksum
    Metal ID: Base58("0B2A" + composite metadata hash)

Two chunk layouts coexist on-chain:
    v1:  "C"/"E" + "010" + additive(4 ASCII) + next key(16 hex) + Base64 slice(<=1000)
    v2:  flags(1) + 0x31 + additive(uint16 LE) + next key(8) + raw slice(<=1012)
"""

__version__ = "0.1.0"

# Record limits
CHUNK_MAX_SIZE = 1024

# Version 1 layout (ASCII header, Base64 payload)
V1_VERSION = b"010"
V1_HEADER_SIZE = 24
V1_CHUNK_PAYLOAD_MAX_SIZE = 1000
V1_DEFAULT_ADDITIVE = b"0000"

# Version 2 layout (binary header, raw payload)
V2_VERSION = 0x31
V2_HEADER_SIZE = 12
V2_CHUNK_PAYLOAD_MAX_SIZE = 1012
V2_DEFAULT_ADDITIVE = 0

# Metal ID: Base58(2-byte header + 32-byte composite hash)
METAL_ID_HEADER_HEX = "0B2A"
METAL_ID_HASH_SIZE = 32

# Forge retry bound on key collision
DEFAULT_MAX_RETRIES = 32
