"""
models.py — Negotiation records owned by each agent.

A rider keeps one RiderNegotiation per request_id; a driver keeps one
DriverBid per bid_id. Records only move forward through their phases.
Keeping them in one file avoids circular imports between rider and driver.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Iterator, Optional, TypeVar

from .errors import InvalidTransition
from .schema import InvoiceResponse, RideReceipt, RideRequest, RideStatus
from .selection import BidCandidate, CandidateBook


class RiderPhase(str, Enum):
    REQUESTED = "requested"
    COLLECTING = "collecting"
    SELECTED = "selected"
    ACCEPTED = "accepted"
    INVOICE_EXCHANGED = "invoice_exchanged"
    AWAITING_COMPLETION = "awaiting_completion"
    SETTLED = "settled"
    ABANDONED = "abandoned"


class DriverPhase(str, Enum):
    IDLE = "idle"
    BID_SENT = "bid_sent"
    ACCEPTED = "accepted"
    SETTLED = "settled"


# Accepted may jump straight to settled when `completed` overtakes the invoice.
RIDER_TRANSITIONS: dict[RiderPhase, frozenset[RiderPhase]] = {
    RiderPhase.REQUESTED: frozenset({RiderPhase.COLLECTING}),
    RiderPhase.COLLECTING: frozenset({RiderPhase.SELECTED, RiderPhase.ABANDONED}),
    RiderPhase.SELECTED: frozenset({RiderPhase.ACCEPTED}),
    RiderPhase.ACCEPTED: frozenset({
        RiderPhase.INVOICE_EXCHANGED,
        RiderPhase.AWAITING_COMPLETION,
        RiderPhase.SETTLED,
    }),
    RiderPhase.INVOICE_EXCHANGED: frozenset({
        RiderPhase.AWAITING_COMPLETION,
        RiderPhase.SETTLED,
    }),
    RiderPhase.AWAITING_COMPLETION: frozenset({RiderPhase.SETTLED}),
    RiderPhase.SETTLED: frozenset(),
    RiderPhase.ABANDONED: frozenset(),
}

DRIVER_TRANSITIONS: dict[DriverPhase, frozenset[DriverPhase]] = {
    DriverPhase.IDLE: frozenset({DriverPhase.BID_SENT}),
    DriverPhase.BID_SENT: frozenset({DriverPhase.ACCEPTED}),
    DriverPhase.ACCEPTED: frozenset({DriverPhase.SETTLED}),
    DriverPhase.SETTLED: frozenset(),
}

# Phases in which the rider has committed to a bid and expects driver traffic.
RIDER_COMMITTED = frozenset({
    RiderPhase.ACCEPTED,
    RiderPhase.INVOICE_EXCHANGED,
    RiderPhase.AWAITING_COMPLETION,
})


@dataclass
class RiderNegotiation:
    """Rider-side record for one outstanding ride request."""
    request: RideRequest
    request_event_id: str = ""
    phase: RiderPhase = RiderPhase.REQUESTED
    candidates: CandidateBook = field(default_factory=CandidateBook)
    winner: Optional[BidCandidate] = None
    acceptance_event_id: str = ""
    invoice: Optional[InvoiceResponse] = None
    statuses: dict[RideStatus, str] = field(default_factory=dict)   # status -> envelope id
    receipt: Optional[RideReceipt] = None

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def bid_id(self) -> Optional[str]:
        return self.winner.bid_id if self.winner else None

    @property
    def driver_pubkey(self) -> Optional[str]:
        return self.winner.driver_pubkey if self.winner else None

    @property
    def total_sats(self) -> Optional[int]:
        return self.winner.bid.total_sats if self.winner else None

    def advance(self, phase: RiderPhase) -> None:
        if phase not in RIDER_TRANSITIONS[self.phase]:
            raise InvalidTransition(
                f"request {self.request_id}: {self.phase.value} -> {phase.value}"
            )
        self.phase = phase


@dataclass
class DriverBid:
    """Driver-side record for one bid it has placed."""
    bid_id: str
    request_id: str
    request_event_id: str
    rider_pubkey: str
    total_sats: int
    deposit_sats: int = 0
    eta_mins: int = 0
    bid_event_id: str = ""
    phase: DriverPhase = DriverPhase.IDLE
    acceptance_event_id: str = ""
    statuses_sent: list[RideStatus] = field(default_factory=list)
    receipt: Optional[RideReceipt] = None

    def advance(self, phase: DriverPhase) -> None:
        if phase not in DRIVER_TRANSITIONS[self.phase]:
            raise InvalidTransition(
                f"bid {self.bid_id}: {self.phase.value} -> {phase.value}"
            )
        self.phase = phase


RecordT = TypeVar("RecordT")
KeyT = TypeVar("KeyT")
ValueT = TypeVar("ValueT")


class NegotiationRegistry(Generic[RecordT]):
    """Keyed table of negotiation records scoped to one agent's lifetime."""

    def __init__(self) -> None:
        self._records: dict[str, RecordT] = {}

    def add(self, key: str, record: RecordT) -> RecordT:
        if key in self._records:
            raise KeyError(f"record {key!r} already exists")
        self._records[key] = record
        return record

    def get(self, key: str) -> Optional[RecordT]:
        return self._records.get(key)

    def values(self) -> list[RecordT]:
        return list(self._records.values())

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __getitem__(self, key: str) -> RecordT:
        return self._records[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)


class RecentKeys(Generic[KeyT, ValueT]):
    """
    Insertion-ordered map that forgets its oldest entries once it holds
    more than ``capacity``. Used for dedupe state that would otherwise
    grow for the life of the process.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: OrderedDict[KeyT, Optional[ValueT]] = OrderedDict()

    def add(self, key: KeyT, value: Optional[ValueT] = None) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def get(self, key: KeyT) -> Optional[ValueT]:
        return self._items.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)
