"""
selection.py — Deterministic ranking over the bids collected for one request.

Order: ascending total_sats, then ascending eta_mins. bid_id breaks any
remaining tie so the winner never depends on arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .schema import RideBid


@dataclass(frozen=True)
class BidCandidate:
    bid: RideBid
    event_id: str
    driver_pubkey: str

    @property
    def bid_id(self) -> str:
        return self.bid.bid_id


def rank_key(candidate: BidCandidate) -> tuple[int, int, str]:
    return (candidate.bid.total_sats, candidate.bid.eta_mins, candidate.bid_id)


def select_winning_bid(candidates: Iterable[BidCandidate]) -> Optional[BidCandidate]:
    """Return the minimum candidate under rank_key, or None when there are none."""
    return min(candidates, key=rank_key, default=None)


class CandidateBook:
    """Bids for one request keyed by bid_id; a repeated bid_id replaces the earlier entry."""

    def __init__(self) -> None:
        self._by_id: dict[str, BidCandidate] = {}

    def upsert(self, candidate: BidCandidate) -> bool:
        """Store the candidate. Returns True if it replaced an existing entry."""
        replaced = candidate.bid_id in self._by_id
        self._by_id[candidate.bid_id] = candidate
        return replaced

    def get(self, bid_id: str) -> Optional[BidCandidate]:
        return self._by_id.get(bid_id)

    def winner(self) -> Optional[BidCandidate]:
        return select_winning_bid(self._by_id.values())

    def ranked(self) -> list[BidCandidate]:
        return sorted(self._by_id.values(), key=rank_key)

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[BidCandidate]:
        return iter(self._by_id.values())
