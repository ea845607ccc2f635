"""
gate.py — Authenticity gate run on every inbound envelope.

Nothing reaches a state machine unless the envelope signature verifies
against its claimed origin, the protocol version tag is the supported one,
and the content parses as the payload its message-type tag declares.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .envelope import EVENT_KIND, PROTOCOL_VERSION, Envelope
from .errors import AuthenticityError, SchemaError
from .schema import MessageType, Payload, decode_payload
from .signing import verify_envelope

logger = logging.getLogger("satoshi_ride.gate")


@dataclass(frozen=True)
class InboundMessage:
    """An authenticated, schema-valid message."""

    envelope: Envelope
    message_type: MessageType
    payload: Payload

    @property
    def sender(self) -> str:
        return self.envelope.pubkey

    @property
    def event_id(self) -> str:
        return self.envelope.id

    @property
    def reference(self) -> Optional[str]:
        return self.envelope.reference


def authenticate(raw: Any) -> InboundMessage:
    """
    Run the full gate on a wire mapping or Envelope.

    Raises:
        SchemaError:       malformed envelope, unknown message type, invalid payload.
        AuthenticityError: bad signature, wrong kind, missing or unsupported version.
    """
    envelope = Envelope.from_wire(raw)

    if envelope.kind != EVENT_KIND:
        raise AuthenticityError(f"unsupported envelope kind {envelope.kind}")
    if not verify_envelope(envelope):
        raise AuthenticityError(f"bad signature on {envelope.id[:12]}")
    version = envelope.version
    if version is None:
        raise AuthenticityError(f"missing version tag on {envelope.id[:12]}")
    if version != PROTOCOL_VERSION:
        raise AuthenticityError(f"unsupported version {version!r} on {envelope.id[:12]}")

    message_type = envelope.message_type
    if message_type is None:
        raise SchemaError(f"unknown message type on {envelope.id[:12]}")

    payload = decode_payload(message_type, envelope.content)
    return InboundMessage(envelope=envelope, message_type=message_type, payload=payload)


def admit(raw: Any) -> Optional[InboundMessage]:
    """Silent form of authenticate(): logs the reason and returns None on failure."""
    try:
        return authenticate(raw)
    except AuthenticityError as exc:
        logger.warning("Dropped inauthentic message: %s", exc)
    except SchemaError as exc:
        logger.warning("Dropped malformed message: %s", exc)
    return None
