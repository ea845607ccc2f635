"""
test_driver.py — Tests for the driver state machine.

Tests cover:
  - One bid per ride request, priced from the driver's pricing config
  - Requests that cannot be quoted are declined
  - Acceptance checks (driver identity, rider, bid reference)
  - Exactly one progress sequence per accepted bid
  - Invoice requests (placeholder invoice, amount check, payment failures)
  - Receipt verification (valid, wrong total, forged body, out of phase)

Run with:
    pytest tests/test_driver.py -v
"""

from __future__ import annotations

import asyncio
import itertools
import json

import pytest

from satoshi_ride.config import PricingConfig
from satoshi_ride.driver import DriverAgent
from satoshi_ride.models import DriverPhase
from satoshi_ride.payments import PaymentError
from satoshi_ride.receipt import build_receipt
from satoshi_ride.schema import MessageType, RideStatus, parse_payload
from satoshi_ride.signing import Signer

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _signed(signer, message_type, data, *, reference=None, targets=(), created_at=None) -> dict:
    payload = parse_payload(message_type, data)
    return signer.sign_envelope(
        message_type, payload, reference=reference, targets=targets, created_at=created_at,
    ).to_wire()


def _request(rider_signer, request_id="R1", created_at=None) -> dict:
    return _signed(rider_signer, MessageType.RIDE_REQUEST, {
        "id": request_id,
        "pickup_geohash": "dp3w",
        "dropoff_geohash": "dp3x",
        "time_window_mins": 15,
        "max_total_sats": 20_000,
        "max_eta_mins": 10,
        "payment_modes": ["LN", "ONCHAIN"],
    }, created_at=created_at)


def _acceptance(rider_signer, driver, *, reference, driver_pubkey=None, created_at=None) -> dict:
    return _signed(rider_signer, MessageType.RIDE_ACCEPT, {
        "request_id": "R1",
        "bid_id": "B1",
        "rider_pubkey": rider_signer.identity,
        "driver_pubkey": driver_pubkey or driver.identity,
    }, reference=reference, targets=[driver.identity], created_at=created_at)


def _invoice_request(rider_signer, driver, *, amount=18_000, mode="LN") -> dict:
    return _signed(rider_signer, MessageType.INVOICE_REQUEST, {
        "request_id": "R1",
        "bid_id": "B1",
        "amount_sats": amount,
        "payment_mode": mode,
    }, targets=[driver.identity])


def _receipt(rider_signer, driver, *, total=18_000, tamper=None) -> dict:
    receipt = build_receipt(
        rider_signer,
        request_id="R1",
        bid_id="B1",
        total_sats=total,
        timestamp=1_700_000_500,
        driver_pubkey=driver.identity,
    )
    if tamper:
        receipt = receipt.model_copy(update=tamper)
    return rider_signer.sign_envelope(
        MessageType.RIDE_RECEIPT, receipt, targets=[driver.identity, rider_signer.identity],
    ).to_wire()


async def _deliver(agent, *wires) -> None:
    for wire in wires:
        agent.deliver(wire)
    await agent.drain()


async def _bid_sent(driver, relay, rider_signer):
    await _deliver(driver, _request(rider_signer))
    [bid] = relay.published_of(MessageType.RIDE_BID)
    return driver.bids["B1"], bid


async def _accepted(driver, relay, rider_signer):
    record, bid = await _bid_sent(driver, relay, rider_signer)
    acceptance = _acceptance(rider_signer, driver, reference=bid.id)
    await _deliver(driver, acceptance)
    return record, acceptance


def _statuses(relay) -> list[str]:
    return [json.loads(e.content)["status"] for e in relay.published_of(MessageType.RIDE_STATUS)]


class FailingPayments:
    async def generate(self, mode, amount_sats, request_id, bid_id):
        raise PaymentError("node unavailable")


# ---------------------------------------------------------------------------
# 1. Bidding
# ---------------------------------------------------------------------------

class TestBidding:
    @pytest.mark.asyncio
    async def test_request_gets_one_bid(self, driver, relay, rider_signer):
        request = _request(rider_signer)
        await _deliver(driver, request)
        [bid] = relay.published_of(MessageType.RIDE_BID)
        record = driver.bids["B1"]

        payload = parse_payload(MessageType.RIDE_BID, json.loads(bid.content))
        assert payload.total_sats == 18_000
        assert payload.deposit_sats == 1_800
        assert payload.eta_mins == 6
        assert bid.reference == request["id"]
        assert bid.targets == [rider_signer.identity]
        assert record.phase is DriverPhase.BID_SENT
        assert record.bid_event_id == bid.id
        assert record.rider_pubkey == rider_signer.identity

    @pytest.mark.asyncio
    async def test_redelivered_request_not_bid_twice(self, driver, relay, rider_signer):
        first = _request(rider_signer, created_at=1_700_000_000)
        resent = _request(rider_signer, created_at=1_700_000_009)
        await _deliver(driver, first, first, resent)
        assert len(relay.published_of(MessageType.RIDE_BID)) == 1
        assert len(driver.bids) == 1

    @pytest.mark.asyncio
    async def test_each_request_gets_its_own_bid(
        self, driver_signer, rider_signer, relay, slow_config, flat_pricing,
    ):
        counter = itertools.count(1)
        async with DriverAgent(
            driver_signer, relay, slow_config,
            pricing=flat_pricing, bid_id_factory=lambda: f"B{next(counter)}",
        ) as agent:
            other_rider = Signer.generate()
            await _deliver(agent, _request(rider_signer), _request(other_rider), _request(rider_signer, "R2"))
            assert sorted(agent.bids) == ["B1", "B2", "B3"]
            assert {b.rider_pubkey for b in agent.bids.values()} == {rider_signer.identity, other_rider.identity}

    @pytest.mark.asyncio
    async def test_unquotable_request_declined(self, driver_signer, rider_signer, relay, slow_config):
        free = PricingConfig(
            base_fee=0, rate_distance=0, rate_time=0, surge_pct=0, risk_buffer=0,
            deposit_pct=0, deposit_cap=0,
        )
        async with DriverAgent(driver_signer, relay, slow_config, pricing=free) as agent:
            await _deliver(agent, _request(rider_signer))
            assert relay.published_of(MessageType.RIDE_BID) == []
            assert len(agent.bids) == 0

    @pytest.mark.asyncio
    async def test_own_bids_not_heard(self, driver, relay, rider_signer):
        await _bid_sent(driver, relay, rider_signer)
        await asyncio.sleep(0)
        assert driver.inbox.empty()


# ---------------------------------------------------------------------------
# 2. Acceptance and progress
# ---------------------------------------------------------------------------

class TestAcceptance:
    @pytest.mark.asyncio
    async def test_acceptance_starts_progress(self, driver, relay, rider_signer):
        record, acceptance = await _accepted(driver, relay, rider_signer)
        assert record.phase is DriverPhase.ACCEPTED
        assert record.acceptance_event_id == acceptance["id"]
        assert _statuses(relay) == ["en_route"]
        [status] = relay.published_of(MessageType.RIDE_STATUS)
        assert status.reference == acceptance["id"]
        assert status.targets == [rider_signer.identity]
        assert driver.timers.pending("B1") == 1

    @pytest.mark.asyncio
    async def test_acceptance_twice_runs_one_sequence(self, driver, relay, rider_signer):
        record, bid = await _bid_sent(driver, relay, rider_signer)
        first = _acceptance(rider_signer, driver, reference=bid.id, created_at=1_700_000_000)
        second = _acceptance(rider_signer, driver, reference=bid.id, created_at=1_700_000_001)
        await _deliver(driver, first, first, second)

        assert record.phase is DriverPhase.ACCEPTED
        assert _statuses(relay) == ["en_route"]
        assert driver.timers.pending("B1") == 1

    @pytest.mark.asyncio
    async def test_acceptance_naming_other_driver_ignored(self, driver, relay, rider_signer):
        record, bid = await _bid_sent(driver, relay, rider_signer)
        wire = _acceptance(rider_signer, driver, reference=bid.id, driver_pubkey=Signer.generate().identity)
        await _deliver(driver, wire)
        assert record.phase is DriverPhase.BID_SENT
        assert driver.timers.pending() == 0
        assert _statuses(relay) == []

    @pytest.mark.asyncio
    async def test_acceptance_referencing_other_event_ignored(self, driver, relay, rider_signer):
        record, _ = await _bid_sent(driver, relay, rider_signer)
        await _deliver(driver, _acceptance(rider_signer, driver, reference="0" * 64))
        assert record.phase is DriverPhase.BID_SENT

    @pytest.mark.asyncio
    async def test_acceptance_from_other_rider_ignored(self, driver, relay, rider_signer):
        record, bid = await _bid_sent(driver, relay, rider_signer)
        await _deliver(driver, _acceptance(Signer.generate(), driver, reference=bid.id))
        assert record.phase is DriverPhase.BID_SENT

    @pytest.mark.asyncio
    async def test_acceptance_for_unknown_bid_ignored(self, driver, relay, rider_signer):
        await _deliver(driver, _acceptance(rider_signer, driver, reference="0" * 64))
        assert len(driver.bids) == 0

    @pytest.mark.asyncio
    async def test_progress_sequence(
        self, driver_signer, rider_signer, relay, fast_config, flat_pricing, wait_until,
    ):
        async with DriverAgent(
            driver_signer, relay, fast_config, pricing=flat_pricing, bid_id_factory=lambda: "B1",
        ) as agent:
            record, _ = await _accepted(agent, relay, rider_signer)
            await wait_until(lambda: len(record.statuses_sent) == 3)
            assert record.statuses_sent == [RideStatus.EN_ROUTE, RideStatus.ARRIVED, RideStatus.COMPLETED]
            assert _statuses(relay) == ["en_route", "arrived", "completed"]
            assert agent.timers.pending() == 0


# ---------------------------------------------------------------------------
# 3. Invoice
# ---------------------------------------------------------------------------

class TestInvoice:
    @pytest.mark.asyncio
    async def test_invoice_request_answered(self, driver, relay, rider_signer):
        await _bid_sent(driver, relay, rider_signer)
        request = _invoice_request(rider_signer, driver)
        await _deliver(driver, request)

        [response] = relay.published_of(MessageType.INVOICE_RESPONSE)
        payload = parse_payload(MessageType.INVOICE_RESPONSE, json.loads(response.content))
        assert payload.amount_sats == 18_000
        assert payload.invoice.startswith("lnbc18000")
        assert response.reference == request["id"]
        assert response.targets == [rider_signer.identity]

    @pytest.mark.asyncio
    async def test_onchain_request_gets_address(self, driver, relay, rider_signer):
        await _bid_sent(driver, relay, rider_signer)
        await _deliver(driver, _invoice_request(rider_signer, driver, mode="ONCHAIN"))
        [response] = relay.published_of(MessageType.INVOICE_RESPONSE)
        assert json.loads(response.content)["address"].startswith("bc1q")

    @pytest.mark.asyncio
    async def test_wrong_amount_dropped(self, driver, relay, rider_signer):
        await _bid_sent(driver, relay, rider_signer)
        await _deliver(driver, _invoice_request(rider_signer, driver, amount=100))
        assert relay.published_of(MessageType.INVOICE_RESPONSE) == []

    @pytest.mark.asyncio
    async def test_request_from_other_rider_dropped(self, driver, relay, rider_signer):
        await _bid_sent(driver, relay, rider_signer)
        await _deliver(driver, _invoice_request(Signer.generate(), driver))
        assert relay.published_of(MessageType.INVOICE_RESPONSE) == []

    @pytest.mark.asyncio
    async def test_payment_failure_sends_nothing(
        self, driver_signer, rider_signer, relay, slow_config, flat_pricing,
    ):
        async with DriverAgent(
            driver_signer, relay, slow_config,
            pricing=flat_pricing, payments=FailingPayments(), bid_id_factory=lambda: "B1",
        ) as agent:
            await _bid_sent(agent, relay, rider_signer)
            await _deliver(agent, _invoice_request(rider_signer, agent))
            assert relay.published_of(MessageType.INVOICE_RESPONSE) == []
            assert agent.fatal_error is None


# ---------------------------------------------------------------------------
# 4. Receipt
# ---------------------------------------------------------------------------

class TestReceipt:
    @pytest.mark.asyncio
    async def test_valid_receipt_settles(self, driver, relay, rider_signer):
        record, _ = await _accepted(driver, relay, rider_signer)
        await _deliver(driver, _receipt(rider_signer, driver))
        assert record.phase is DriverPhase.SETTLED
        assert record.receipt.total_sats == 18_000
        assert driver.timers.pending("B1") == 0

    @pytest.mark.asyncio
    async def test_wrong_total_rejected(self, driver, relay, rider_signer):
        record, _ = await _accepted(driver, relay, rider_signer)
        await _deliver(driver, _receipt(rider_signer, driver, total=17_000))
        assert record.phase is DriverPhase.ACCEPTED
        assert record.receipt is None

    @pytest.mark.asyncio
    async def test_forged_body_rejected(self, driver, relay, rider_signer):
        record, _ = await _accepted(driver, relay, rider_signer)
        await _deliver(driver, _receipt(rider_signer, driver, tamper={"timestamp": 1_700_000_999}))
        assert record.phase is DriverPhase.ACCEPTED

    @pytest.mark.asyncio
    async def test_receipt_signed_by_other_key_rejected(self, driver, relay, rider_signer):
        record, _ = await _accepted(driver, relay, rider_signer)
        impostor = Signer.generate()
        forged = build_receipt(
            impostor, request_id="R1", bid_id="B1", total_sats=18_000,
            timestamp=1_700_000_500, driver_pubkey=driver.identity,
        ).model_copy(update={"rider_pubkey": rider_signer.identity})
        wire = rider_signer.sign_envelope(MessageType.RIDE_RECEIPT, forged, targets=[driver.identity]).to_wire()
        await _deliver(driver, wire)
        assert record.phase is DriverPhase.ACCEPTED

    @pytest.mark.asyncio
    async def test_receipt_before_acceptance_rejected(self, driver, relay, rider_signer):
        record, _ = await _bid_sent(driver, relay, rider_signer)
        await _deliver(driver, _receipt(rider_signer, driver))
        assert record.phase is DriverPhase.BID_SENT

    @pytest.mark.asyncio
    async def test_second_receipt_is_noop(self, driver, relay, rider_signer):
        record, _ = await _accepted(driver, relay, rider_signer)
        await _deliver(driver, _receipt(rider_signer, driver))
        first = record.receipt
        await _deliver(driver, _receipt(rider_signer, driver))
        assert record.receipt is first
        assert record.phase is DriverPhase.SETTLED
