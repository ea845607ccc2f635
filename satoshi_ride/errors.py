"""
errors.py — Exception taxonomy for satoshi-ride.

Inbound failures (SchemaError, AuthenticityError, ProtocolViolation) are
caught by the agent runtime, logged, and the message is dropped with no
state change. FatalError is the only one that escapes to the caller.
"""


class RideProtocolError(Exception):
    """Base exception for all satoshi-ride errors."""


class SchemaError(RideProtocolError):
    """Malformed, missing, or out-of-range payload field."""


class AuthenticityError(RideProtocolError):
    """Bad signature, forged receipt body, or unsupported/missing version tag."""


class ProtocolViolation(RideProtocolError):
    """Unknown bid or request, wrong counterpart, wrong phase, or mismatched total."""


class FatalError(RideProtocolError):
    """A required outbound signature could not be produced."""


class InvalidTransition(RideProtocolError):
    """A negotiation record was asked to move backwards or skip to an unreachable phase."""
