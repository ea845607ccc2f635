"""
receipt.py — Detached settlement signature over the canonical receipt body.

The receipt travels inside a signed envelope, but its body carries a second,
independent signature by the rider. The driver re-derives the body from the
received fields and checks that signature, so a valid envelope wrapping a
forged body is still rejected:

  1. receipt_body()        — the six signed fields as a dict.
  2. canonical_receipt()   — sorted-key compact JSON of that dict.
  3. hash_receipt_body()   — SHA-256 digest that is actually signed.
  4. build_receipt()       — sign and return a RideReceipt (FatalError on failure).
  5. verify_receipt()      — re-derive, re-hash, verify against rider_pubkey.
"""

from __future__ import annotations

import hashlib
import json
import logging

from .errors import FatalError
from .schema import RideReceipt
from .signing import Signer, verify_detached

logger = logging.getLogger("satoshi_ride.receipt")


def receipt_body(
    *,
    request_id: str,
    bid_id: str,
    total_sats: int,
    timestamp: int,
    rider_pubkey: str,
    driver_pubkey: str,
) -> dict:
    return {
        "bid_id": bid_id,
        "driver_pubkey": driver_pubkey,
        "request_id": request_id,
        "rider_pubkey": rider_pubkey,
        "timestamp": timestamp,
        "total_sats": total_sats,
    }


def canonical_receipt(body: dict) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def hash_receipt_body(body: dict) -> bytes:
    """Return the SHA-256 digest of the canonical receipt body."""
    return hashlib.sha256(canonical_receipt(body).encode("utf-8")).digest()


def body_of(receipt: RideReceipt) -> dict:
    return receipt_body(
        request_id=receipt.request_id,
        bid_id=receipt.bid_id,
        total_sats=receipt.total_sats,
        timestamp=receipt.timestamp,
        rider_pubkey=receipt.rider_pubkey,
        driver_pubkey=receipt.driver_pubkey,
    )


def build_receipt(
    signer: Signer,
    *,
    request_id: str,
    bid_id: str,
    total_sats: int,
    timestamp: int,
    driver_pubkey: str,
) -> RideReceipt:
    """
    Compose and sign the receipt for a completed ride. The rider identity is
    the signer's own.

    Raises:
        FatalError: if the detached signature cannot be produced or the
            resulting receipt does not validate.
    """
    body = receipt_body(
        request_id=request_id,
        bid_id=bid_id,
        total_sats=total_sats,
        timestamp=timestamp,
        rider_pubkey=signer.identity,
        driver_pubkey=driver_pubkey,
    )
    signature = signer.sign_detached(hash_receipt_body(body))
    try:
        receipt = RideReceipt(**body, signature=signature)
    except ValueError as exc:
        raise FatalError(f"receipt for bid {bid_id} does not validate: {exc}") from exc

    logger.info(
        "Receipt signed: request=%s bid=%s total=%d",
        request_id, bid_id, total_sats,
    )
    return receipt


def verify_receipt(receipt: RideReceipt) -> bool:
    """True if the detached signature covers exactly this receipt's fields."""
    digest = hash_receipt_body(body_of(receipt))
    return verify_detached(receipt.signature, digest, receipt.rider_pubkey)
