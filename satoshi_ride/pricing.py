"""
pricing.py — Driver quote computation and the trip-estimation seam.

Real distance/time estimation is outside this package. FixedTripEstimator
returns the same figures for every request, which is what the development
harness and tests need.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from .config import PricingConfig
from .schema import RideRequest


@dataclass(frozen=True)
class TripEstimate:
    distance: float        # miles, pickup -> dropoff
    duration_mins: float   # minutes, pickup -> dropoff
    eta_mins: int          # minutes until the driver reaches pickup


@dataclass(frozen=True)
class Quote:
    total_sats: int
    deposit_sats: int
    eta_mins: int


class TripEstimator(Protocol):
    def estimate(self, request: RideRequest) -> TripEstimate: ...


class FixedTripEstimator:
    def __init__(self, distance: float = 4.2, duration_mins: float = 13, eta_mins: int = 6):
        self._estimate = TripEstimate(distance, duration_mins, eta_mins)

    def estimate(self, request: RideRequest) -> TripEstimate:
        return self._estimate


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_total_sats(estimate: TripEstimate, pricing: PricingConfig) -> int:
    raw = (
        pricing.base_fee
        + estimate.distance * pricing.rate_distance
        + estimate.duration_mins * pricing.rate_time
        + pricing.risk_buffer
    )
    return round_half_up(raw * (1 + pricing.surge_pct / 100))


def compute_deposit_sats(total_sats: int, pricing: PricingConfig) -> int:
    return min(pricing.deposit_cap, round_half_up(total_sats * pricing.deposit_pct))


def quote_ride(estimate: TripEstimate, pricing: PricingConfig) -> Quote:
    """
    Price a trip. With the default pricing and estimate (4.2 mi, 13 min):
    (1500 + 5040 + 1040 + 500) * 1.10 = 8888 sats, deposit 1333 sats.
    """
    total = compute_total_sats(estimate, pricing)
    return Quote(
        total_sats=total,
        deposit_sats=compute_deposit_sats(total, pricing),
        eta_mins=estimate.eta_mins,
    )
