"""
signing.py — Ed25519 keys, envelope signatures, and detached signatures.

An identity is the hex-encoded 32-byte verify key (64 lowercase hex chars).
Envelope signatures cover the envelope id; detached signatures cover the
SHA-256 of a canonical sub-body (the receipt) and are checked on their own.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from .config import RideConfig
from .envelope import EVENT_KIND, Envelope, build_tags, compute_event_id
from .errors import FatalError
from .schema import MessageType, Payload, encode_payload

logger = logging.getLogger("satoshi_ride.signing")


def generate_secret_key_hex() -> str:
    """Fresh 32-byte Ed25519 seed as hex."""
    return SigningKey.generate().encode(encoder=HexEncoder).decode("ascii")


class Signer:
    """Holds one agent's secret key and produces its signatures."""

    def __init__(self, signing_key: SigningKey):
        self._key = signing_key
        self.identity: str = signing_key.verify_key.encode(encoder=HexEncoder).decode("ascii")

    @classmethod
    def generate(cls) -> "Signer":
        return cls(SigningKey.generate())

    @classmethod
    def from_secret_hex(cls, secret_hex: str) -> "Signer":
        try:
            return cls(SigningKey(bytes.fromhex(secret_hex.strip())))
        except (ValueError, TypeError) as exc:
            raise FatalError("secret key must be 64 hex characters") from exc

    @classmethod
    def from_config(cls, config: RideConfig) -> "Signer":
        if not config.secret_key_hex:
            raise FatalError(
                "NOSTR_SK_HEX is not set. Export it or pass it via "
                "RideConfig(secret_key_hex=...)."
            )
        return cls.from_secret_hex(config.secret_key_hex)

    def sign(self, data: bytes) -> str:
        """Return the hex signature of ``data``. Raises FatalError on failure."""
        try:
            return self._key.sign(data).signature.hex()
        except (CryptoError, ValueError, TypeError) as exc:
            raise FatalError(f"could not sign {len(data)} bytes: {exc}") from exc

    def sign_detached(self, body_hash: bytes) -> str:
        return self.sign(body_hash)

    def sign_envelope(
        self,
        message_type: MessageType,
        payload: Payload,
        *,
        reference: Optional[str] = None,
        targets: Iterable[str] = (),
        created_at: Optional[int] = None,
    ) -> Envelope:
        """Serialise ``payload``, tag it, derive the id, and sign it."""
        tags = build_tags(message_type, reference=reference, targets=targets)
        content = encode_payload(payload)
        stamp = int(time.time()) if created_at is None else created_at
        event_id = compute_event_id(self.identity, stamp, EVENT_KIND, tags, content)
        sig = self.sign(bytes.fromhex(event_id))
        return Envelope(
            id=event_id,
            pubkey=self.identity,
            created_at=stamp,
            kind=EVENT_KIND,
            tags=tags,
            content=content,
            sig=sig,
        )


def verify_detached(signature: str, body_hash: bytes, identity: str) -> bool:
    """Check a hex signature over ``body_hash`` against a hex identity."""
    try:
        VerifyKey(bytes.fromhex(identity)).verify(body_hash, bytes.fromhex(signature))
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True


def verify_envelope(envelope: Envelope) -> bool:
    """
    True when the id is the content-derived hash of the envelope and the
    signature verifies against the claimed origin over that id.
    """
    expected_id = compute_event_id(
        envelope.pubkey,
        envelope.created_at,
        envelope.kind,
        envelope.tags,
        envelope.content,
    )
    if expected_id != envelope.id:
        logger.debug("Envelope id mismatch: claimed=%s derived=%s", envelope.id, expected_id)
        return False
    return verify_detached(envelope.sig, bytes.fromhex(expected_id), envelope.pubkey)
