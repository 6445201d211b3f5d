"""
Metal seal — the optional descriptor stored ahead of a v2 payload.

Serialized as a compact positional JSON array:
    ["seal1", <length>, <mime type|null>, <name|null>, <comment>]

Trailing absent fields are omitted; absent fields followed by a present
one are written as null.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from metal.errors import MalformedDescriptor

SCHEMA = "seal1"
COMPAT_SCHEMAS = frozenset({SCHEMA})


def _is_optional_str(value: object) -> bool:
    return value is None or isinstance(value, str)


@dataclass(frozen=True)
class MetalSeal:
    """Descriptor for a forged payload.

    Attributes:
        length: Payload length in bytes.
        mime_type: MIME type of the payload, if known.
        name: Original file name, if any.
        comment: Free-form comment.
        schema: Schema tag; parse() only accepts compatible tags.
    """

    length: int
    mime_type: str | None = None
    name: str | None = None
    comment: str | None = None
    schema: str = SCHEMA

    def to_list(self) -> list:
        fields: list = [self.schema, self.length, self.mime_type, self.name, self.comment]
        while len(fields) > 2 and fields[-1] is None:
            fields.pop()
        return fields

    def stringify(self) -> str:
        return json.dumps(self.to_list(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def parse(cls, text: str) -> MetalSeal:
        """Parse seal JSON. Raises MalformedDescriptor if not a compatible seal."""
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError) as e:
            raise MalformedDescriptor(f"Malformed seal JSON: {e}") from e

        if not isinstance(parsed, list) or not 2 <= len(parsed) <= 5:
            raise MalformedDescriptor("Malformed seal JSON: expected a 2-5 element array")

        schema, length, *rest = parsed
        if not isinstance(schema, str) or schema not in COMPAT_SCHEMAS:
            raise MalformedDescriptor(f"Incompatible seal schema: {schema!r}")
        if isinstance(length, bool) or not isinstance(length, int) or length < 0:
            raise MalformedDescriptor(f"Malformed seal length: {length!r}")
        if not all(_is_optional_str(v) for v in rest):
            raise MalformedDescriptor("Malformed seal JSON: optional fields must be strings")

        rest += [None] * (3 - len(rest))
        return cls(
            length=length,
            mime_type=rest[0],
            name=rest[1],
            comment=rest[2],
            schema=schema,
        )
