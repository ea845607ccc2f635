"""
schema.py — Payload schemas for every protocol message kind.

Each message kind is a frozen pydantic model. A payload object only exists
if it passed validation, so downstream code never re-checks fields:

  1. parse_payload()    — dict -> payload, raises SchemaError.
  2. decode_payload()   — JSON content string -> payload, raises SchemaError.
  3. validate_payload() — fail-closed form: returns None on any violation.
  4. encode_payload()   — payload -> canonical JSON content string.
"""

from __future__ import annotations

import json
import logging
import math
import re
from enum import Enum
from typing import Annotated, Any, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from .errors import SchemaError

logger = logging.getLogger("satoshi_ride.schema")

_IDENTITY_RE = re.compile(r"^[0-9a-f]{64}$")
_SIGNATURE_RE = re.compile(r"^[0-9a-f]{128}$")
# geohash base32: digits plus lowercase letters without a, i, l, o
_GEOHASH_RE = re.compile(r"^[0-9bcdefghjkmnpqrstuvwxyz]{1,12}$")

MAX_NOTE_LENGTH = 280


class MessageType(str, Enum):
    """Value of the ``d`` tag on the wire."""

    RIDE_REQUEST = "ride_request"
    RIDE_BID = "ride_bid"
    RIDE_ACCEPT = "ride_accept"
    INVOICE_REQUEST = "invoice_request"
    INVOICE_RESPONSE = "invoice_response"
    RIDE_STATUS = "ride_status"
    RIDE_RECEIPT = "ride_receipt"


class PaymentMode(str, Enum):
    LN = "LN"
    ONCHAIN = "ONCHAIN"


class RideStatus(str, Enum):
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Field types
# ---------------------------------------------------------------------------

def _integral(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValueError("must be a finite integral number")
        return int(value)
    return value


def _trimmed(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    if value != value.strip():
        raise ValueError("must not carry leading or trailing whitespace")
    return value


def _identity(value: Any) -> str:
    if not isinstance(value, str) or not _IDENTITY_RE.match(value):
        raise ValueError("must be 64 lowercase hex characters")
    return value


def _geohash(value: Any) -> str:
    if not isinstance(value, str) or not _GEOHASH_RE.match(value):
        raise ValueError("must be a geohash of 1-12 base32 characters")
    return value


def _signature(value: Any) -> str:
    if not isinstance(value, str) or not _SIGNATURE_RE.match(value):
        raise ValueError("must be 128 lowercase hex characters")
    return value


PositiveInt = Annotated[int, BeforeValidator(_integral), Field(gt=0)]
NonNegativeInt = Annotated[int, BeforeValidator(_integral), Field(ge=0)]
Text = Annotated[str, BeforeValidator(_trimmed)]
Note = Annotated[str, BeforeValidator(_trimmed), Field(max_length=MAX_NOTE_LENGTH)]
Identity = Annotated[str, BeforeValidator(_identity)]
Geohash = Annotated[str, BeforeValidator(_geohash)]
Signature = Annotated[str, BeforeValidator(_signature)]


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Payload kinds
# ---------------------------------------------------------------------------

class RideRequest(_Payload):
    """Broadcast by the rider. ``request_id`` travels as ``id`` on the wire."""

    request_id: Text = Field(alias="id")
    pickup_geohash: Geohash
    dropoff_geohash: Geohash
    time_window_mins: PositiveInt
    max_total_sats: PositiveInt
    max_eta_mins: PositiveInt
    payment_modes: list[PaymentMode] = Field(min_length=1)
    note: Optional[Note] = None


class RideBid(_Payload):
    request_id: Text
    bid_id: Text
    total_sats: PositiveInt
    deposit_sats: NonNegativeInt
    eta_mins: PositiveInt
    payment_modes_supported: list[PaymentMode] = Field(min_length=1)

    @model_validator(mode="after")
    def _deposit_within_total(self) -> "RideBid":
        if self.deposit_sats > self.total_sats:
            raise ValueError("deposit_sats must not exceed total_sats")
        return self


class RideAcceptance(_Payload):
    request_id: Text
    bid_id: Text
    rider_pubkey: Identity
    driver_pubkey: Identity


class InvoiceRequest(_Payload):
    request_id: Text
    bid_id: Text
    amount_sats: PositiveInt
    payment_mode: PaymentMode


class InvoiceResponse(_Payload):
    request_id: Text
    bid_id: Text
    amount_sats: PositiveInt
    payment_mode: PaymentMode
    invoice: Optional[Text] = None
    address: Optional[Text] = None

    @model_validator(mode="after")
    def _instruction_matches_mode(self) -> "InvoiceResponse":
        if self.payment_mode is PaymentMode.LN and self.invoice is None:
            raise ValueError("LN responses require an invoice")
        if self.payment_mode is PaymentMode.ONCHAIN and self.address is None:
            raise ValueError("ONCHAIN responses require an address")
        return self


class StatusUpdate(_Payload):
    request_id: Text
    bid_id: Text
    status: RideStatus
    rider_pubkey: Identity
    driver_pubkey: Identity


class RideReceipt(_Payload):
    request_id: Text
    bid_id: Text
    total_sats: PositiveInt
    timestamp: PositiveInt
    rider_pubkey: Identity
    driver_pubkey: Identity
    signature: Signature


Payload = Union[
    RideRequest,
    RideBid,
    RideAcceptance,
    InvoiceRequest,
    InvoiceResponse,
    StatusUpdate,
    RideReceipt,
]

PAYLOAD_TYPES: dict[MessageType, type[_Payload]] = {
    MessageType.RIDE_REQUEST: RideRequest,
    MessageType.RIDE_BID: RideBid,
    MessageType.RIDE_ACCEPT: RideAcceptance,
    MessageType.INVOICE_REQUEST: InvoiceRequest,
    MessageType.INVOICE_RESPONSE: InvoiceResponse,
    MessageType.RIDE_STATUS: StatusUpdate,
    MessageType.RIDE_RECEIPT: RideReceipt,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_payload(message_type: MessageType, data: Any) -> Payload:
    """
    Build the payload model for ``message_type`` from a decoded mapping.

    Raises:
        SchemaError: if ``data`` is not a mapping or any field is invalid.
    """
    if not isinstance(data, dict):
        raise SchemaError(f"{message_type.value} payload must be a JSON object")
    model = PAYLOAD_TYPES[message_type]
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise SchemaError(
            f"invalid {message_type.value} payload: "
            f"{exc.error_count()} error(s), first: {exc.errors()[0]['msg']}"
        ) from exc


def decode_payload(message_type: MessageType, content: str) -> Payload:
    """Parse JSON ``content`` and validate it as ``message_type``."""
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"{message_type.value} content is not valid JSON") from exc
    return parse_payload(message_type, data)


def validate_payload(message_type: MessageType, data: Any) -> Optional[Payload]:
    """
    Fail-closed validation. Returns the payload, or None on any violation.
    Never raises.
    """
    try:
        return parse_payload(message_type, data)
    except SchemaError as exc:
        logger.debug("Payload rejected: %s", exc)
        return None


def encode_payload(payload: Payload) -> str:
    """Serialise a payload to the JSON content carried inside an envelope."""
    return json.dumps(
        payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
