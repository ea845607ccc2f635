"""
satoshi-ride — Peer ride-hailing negotiation over a public pub/sub transport.

Public API:
    RiderAgent               — Rider state machine: request, collect, accept, settle
    DriverAgent              — Driver state machine: bid, invoice, progress, verify receipt
    RideConfig               — Environment-driven protocol settings
    PricingConfig            — Driver quote parameters
    BitcoinRpcConfig         — Bitcoin Core RPC settings
    Signer                   — Ed25519 identity and signatures
    generate_secret_key_hex  — Fresh secret key
    verify_envelope          — Envelope id + signature check
    verify_detached          — Detached signature check
    Envelope                 — Signed wire container
    authenticate / admit     — Authenticity gate (raising / silent)
    InboundMessage           — Authenticated, schema-valid message
    MessageType, PaymentMode, RideStatus — Closed enumerations
    RideRequest, RideBid, RideAcceptance, InvoiceRequest,
    InvoiceResponse, StatusUpdate, RideReceipt — Payload kinds
    parse_payload / validate_payload / encode_payload — Schema validator
    select_winning_bid, CandidateBook, BidCandidate — Bid selection policy
    build_receipt / verify_receipt — Receipt signer/verifier
    RiderNegotiation, DriverBid, RiderPhase, DriverPhase,
    NegotiationRegistry      — Negotiation records
    InMemoryRelay, EventFilter, Transport — Transport contract + dev relay
    PlaceholderInvoiceGenerator, BitcoinRpcPaymentGenerator,
    BitcoinRpcClient, PaymentInstruction — Payment collaborators
    FixedTripEstimator, quote_ride — Pricing
    RideProtocolError        — Base exception
    SchemaError, AuthenticityError, ProtocolViolation, FatalError — Error taxonomy
    PaymentError             — Payment collaborator failures
"""

__version__ = "0.1.0"

from .config import BitcoinRpcConfig, PricingConfig, RideConfig
from .driver import DriverAgent
from .envelope import EVENT_KIND, PROTOCOL_VERSION, Envelope
from .errors import (
    AuthenticityError,
    FatalError,
    InvalidTransition,
    ProtocolViolation,
    RideProtocolError,
    SchemaError,
)
from .gate import InboundMessage, admit, authenticate
from .models import (
    DriverBid,
    DriverPhase,
    NegotiationRegistry,
    RiderNegotiation,
    RiderPhase,
)
from .payments import (
    BitcoinRpcClient,
    BitcoinRpcPaymentGenerator,
    PaymentError,
    PaymentInstruction,
    PlaceholderInvoiceGenerator,
)
from .pricing import FixedTripEstimator, TripEstimate, quote_ride
from .receipt import build_receipt, verify_receipt
from .rider import RiderAgent
from .schema import (
    InvoiceRequest,
    InvoiceResponse,
    MessageType,
    PaymentMode,
    RideAcceptance,
    RideBid,
    RideReceipt,
    RideRequest,
    RideStatus,
    StatusUpdate,
    encode_payload,
    parse_payload,
    validate_payload,
)
from .selection import BidCandidate, CandidateBook, select_winning_bid
from .signing import Signer, generate_secret_key_hex, verify_detached, verify_envelope
from .transport import EventFilter, InMemoryRelay, Transport

__all__ = [
    "__version__",
    "RiderAgent",
    "DriverAgent",
    "RideConfig",
    "PricingConfig",
    "BitcoinRpcConfig",
    "Signer",
    "generate_secret_key_hex",
    "verify_envelope",
    "verify_detached",
    "EVENT_KIND",
    "PROTOCOL_VERSION",
    "Envelope",
    "authenticate",
    "admit",
    "InboundMessage",
    "MessageType",
    "PaymentMode",
    "RideStatus",
    "RideRequest",
    "RideBid",
    "RideAcceptance",
    "InvoiceRequest",
    "InvoiceResponse",
    "StatusUpdate",
    "RideReceipt",
    "parse_payload",
    "validate_payload",
    "encode_payload",
    "select_winning_bid",
    "CandidateBook",
    "BidCandidate",
    "build_receipt",
    "verify_receipt",
    "RiderNegotiation",
    "DriverBid",
    "RiderPhase",
    "DriverPhase",
    "NegotiationRegistry",
    "InMemoryRelay",
    "EventFilter",
    "Transport",
    "PlaceholderInvoiceGenerator",
    "BitcoinRpcPaymentGenerator",
    "BitcoinRpcClient",
    "PaymentInstruction",
    "PaymentError",
    "FixedTripEstimator",
    "TripEstimate",
    "quote_ride",
    "RideProtocolError",
    "SchemaError",
    "AuthenticityError",
    "ProtocolViolation",
    "FatalError",
    "InvalidTransition",
]
