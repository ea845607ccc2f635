"""
examples/dev_harness.py — One rider and one driver negotiating in-process.

Both agents get ephemeral keys and talk over an InMemoryRelay. The rider
requests a ride, the driver bids, the rider accepts and asks for an
invoice, the driver reports progress, and the rider signs a receipt the
driver verifies. Timings are shortened so the whole run takes about a
second. No real payment happens.

Run:
    python examples/dev_harness.py
"""

import asyncio
import logging

from satoshi_ride import (
    DriverAgent,
    DriverPhase,
    InMemoryRelay,
    RideConfig,
    RiderAgent,
    RiderPhase,
    Signer,
)

DEV_CONFIG = RideConfig(
    secret_key_hex="",
    bid_collection_ms=500,
    arrived_delay_ms=200,
    completed_delay_ms=200,
)


def show_invoice(invoice):
    target = invoice.invoice or invoice.address
    print(f"  Rider would pay {invoice.amount_sats} sats via {invoice.payment_mode.value}: {target}")


async def run() -> int:
    relay = InMemoryRelay()
    rider = RiderAgent(Signer.generate(), relay, DEV_CONFIG, payment_handler=show_invoice)
    driver = DriverAgent(Signer.generate(), relay, DEV_CONFIG)

    print("=== satoshi-ride: development negotiation ===\n")
    print(f"  Rider  : {rider.identity}")
    print(f"  Driver : {driver.identity}\n")

    async with rider, driver:
        record = await rider.request_ride(
            pickup_geohash="dp3wjzt",
            dropoff_geohash="dp3wnh0",
            time_window_mins=15,
            max_total_sats=12_000,
            max_eta_mins=10,
            note="dev harness",
        )
        for _ in range(100):
            bid = driver.bids.get(record.bid_id) if record.bid_id else None
            if record.phase is RiderPhase.SETTLED and bid is not None and bid.phase is DriverPhase.SETTLED:
                break
            if record.phase is RiderPhase.ABANDONED:
                break
            await asyncio.sleep(0.05)

    print("\n--- Outcome ---")
    print(f"  Rider phase : {record.phase.value}")
    if record.receipt is None:
        print("  No receipt was produced.")
        return 1
    receipt = record.receipt
    print(f"  Request     : {receipt.request_id}")
    print(f"  Bid         : {receipt.bid_id}")
    print(f"  Total       : {receipt.total_sats} sats")
    print(f"  Signature   : {receipt.signature[:32]}...")
    print(f"  Driver phase: {driver.bids[receipt.bid_id].phase.value}")
    print(f"  Envelopes   : {len(relay.published)} published")
    return 0


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    raise SystemExit(asyncio.run(run()))


if __name__ == "__main__":
    main()
