"""
Shared pytest fixtures for satoshi-ride tests.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from satoshi_ride.config import PricingConfig, RideConfig
from satoshi_ride.driver import DriverAgent
from satoshi_ride.envelope import EVENT_KIND, Envelope, compute_event_id
from satoshi_ride.pricing import FixedTripEstimator
from satoshi_ride.rider import RiderAgent
from satoshi_ride.signing import Signer
from satoshi_ride.transport import InMemoryRelay


@pytest.fixture
def rider_signer() -> Signer:
    return Signer.generate()


@pytest.fixture
def driver_signer() -> Signer:
    return Signer.generate()


@pytest.fixture
def relay() -> InMemoryRelay:
    return InMemoryRelay()


@pytest.fixture
def slow_config() -> RideConfig:
    """Windows and delays long enough that tests drive every step by hand."""
    return RideConfig(
        secret_key_hex="",
        bid_collection_ms=60_000,
        arrived_delay_ms=60_000,
        completed_delay_ms=60_000,
    )


@pytest.fixture
def fast_config() -> RideConfig:
    return RideConfig(
        secret_key_hex="",
        bid_collection_ms=50,
        arrived_delay_ms=10,
        completed_delay_ms=10,
    )


@pytest.fixture
def flat_pricing() -> PricingConfig:
    """17500 + 500 risk buffer, no distance/time/surge: every bid is 18000 sats."""
    return PricingConfig(
        base_fee=17_500,
        rate_distance=0,
        rate_time=0,
        surge_pct=0,
        risk_buffer=500,
        deposit_pct=0.1,
        deposit_cap=2_000,
    )


@pytest.fixture
def seal():
    """
    Sign an envelope with hand-picked tags, kind, and content, bypassing
    Signer.sign_envelope so tests can produce envelopes it would never emit.
    """

    def _seal(
        signer: Signer,
        tags,
        content: str,
        kind: int = EVENT_KIND,
        created_at: int = 1_700_000_000,
    ) -> dict:
        tags = [list(t) for t in tags]
        event_id = compute_event_id(signer.identity, created_at, kind, tags, content)
        return Envelope(
            id=event_id,
            pubkey=signer.identity,
            created_at=created_at,
            kind=kind,
            tags=tags,
            content=content,
            sig=signer.sign(bytes.fromhex(event_id)),
        ).to_wire()

    return _seal


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds or the timeout expires."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(interval)

    return _wait


@pytest_asyncio.fixture
async def rider(rider_signer, relay, slow_config):
    agent = RiderAgent(rider_signer, relay, slow_config, request_id_factory=lambda: "R1")
    await agent.start()
    yield agent
    await agent.close()


@pytest_asyncio.fixture
async def driver(driver_signer, relay, slow_config, flat_pricing):
    agent = DriverAgent(
        driver_signer,
        relay,
        slow_config,
        pricing=flat_pricing,
        estimator=FixedTripEstimator(distance=0, duration_mins=0, eta_mins=6),
        bid_id_factory=lambda: "B1",
    )
    await agent.start()
    yield agent
    await agent.close()
