"""
envelope.py — Signed container around a payload.

Wire shape (one JSON object per message)::

    {"id": ..., "pubkey": ..., "created_at": ..., "kind": 30078,
     "tags": [["d", "ride_bid"], ["v", "1"], ["e", ...], ["p", ...]],
     "content": "<payload JSON>", "sig": ...}

The ``id`` is content-derived: the SHA-256 of the compact JSON array
``[0, pubkey, created_at, kind, tags, content]``. The signature covers the id.
"""

from __future__ import annotations

import hashlib
import json
from typing import Annotated, Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import SchemaError
from .schema import MessageType

EVENT_KIND = 30078
PROTOCOL_VERSION = "1"

TAG_MESSAGE_TYPE = "d"
TAG_VERSION = "v"
TAG_REFERENCE = "e"
TAG_TARGET = "p"

# Relays may append extra elements (e.g. a relay hint on an "e" tag); only
# the first two are read, but all of them are covered by the id.
Tag = Annotated[list[str], Field(min_length=2)]


class Envelope(BaseModel):
    """An envelope as received from, or published to, the transport."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    pubkey: str
    created_at: int = Field(ge=0)
    kind: int
    tags: list[Tag] = Field(default_factory=list)
    content: str
    sig: str

    @classmethod
    def from_wire(cls, data: Any) -> "Envelope":
        """Parse an untrusted wire mapping. Raises SchemaError on bad shape."""
        if isinstance(data, Envelope):
            return data
        if not isinstance(data, dict):
            raise SchemaError("envelope must be a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise SchemaError(f"malformed envelope: {exc.errors()[0]['msg']}") from exc

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def tag_values(self, key: str) -> list[str]:
        return [tag[1] for tag in self.tags if tag[0] == key]

    def tag_value(self, key: str) -> Optional[str]:
        """First value for ``key``, or None."""
        for tag in self.tags:
            if tag[0] == key:
                return tag[1]
        return None

    @property
    def version(self) -> Optional[str]:
        return self.tag_value(TAG_VERSION)

    @property
    def message_type(self) -> Optional[MessageType]:
        raw = self.tag_value(TAG_MESSAGE_TYPE)
        try:
            return MessageType(raw)
        except ValueError:
            return None

    @property
    def reference(self) -> Optional[str]:
        return self.tag_value(TAG_REFERENCE)

    @property
    def targets(self) -> list[str]:
        return self.tag_values(TAG_TARGET)

    def summary(self) -> str:
        kind = self.message_type.value if self.message_type else "?"
        return f"[{kind}] {self.pubkey[:8]}… ({self.id[:12]})"


def build_tags(
    message_type: MessageType,
    reference: Optional[str] = None,
    targets: Iterable[str] = (),
) -> list[Tag]:
    """Message-type and version tags first, then the optional reference and targets."""
    tags: list[Tag] = [
        [TAG_MESSAGE_TYPE, message_type.value],
        [TAG_VERSION, PROTOCOL_VERSION],
    ]
    if reference:
        tags.append([TAG_REFERENCE, reference])
    tags.extend([TAG_TARGET, target] for target in targets)
    return tags


def serialize_for_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Iterable[Tag],
    content: str,
) -> bytes:
    return json.dumps(
        [0, pubkey, created_at, kind, [list(t) for t in tags], content],
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_event_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Iterable[Tag],
    content: str,
) -> str:
    """Return the content-derived envelope id (SHA-256 hex)."""
    return hashlib.sha256(
        serialize_for_id(pubkey, created_at, kind, tags, content)
    ).hexdigest()
