"""
driver.py — Driver negotiation state machine.

    idle -> bid_sent -> accepted -> settled      (one DriverBid per bid_id)

The driver answers every new ride request with one bid, serves invoice
requests for its bids, runs the en_route -> arrived -> completed progress
sequence once per accepted bid, and marks the bid settled when a receipt
with a valid detached rider signature arrives.
"""

from __future__ import annotations

import uuid
from typing import Callable, Iterable, Optional

from .agent import Handler, ProtocolAgent
from .config import PricingConfig, RideConfig
from .errors import AuthenticityError, ProtocolViolation, SchemaError
from .gate import InboundMessage
from .models import DriverBid, DriverPhase, NegotiationRegistry, RecentKeys
from .payments import PaymentError, PaymentInstructionGenerator, PlaceholderInvoiceGenerator
from .pricing import FixedTripEstimator, TripEstimator, quote_ride
from .receipt import verify_receipt
from .schema import (
    InvoiceRequest,
    InvoiceResponse,
    MessageType,
    RideAcceptance,
    RideReceipt,
    RideRequest,
    RideStatus,
    StatusUpdate,
    parse_payload,
)
from .signing import Signer
from .transport import EventFilter, Transport


class DriverAgent(ProtocolAgent):
    """Bids on ride requests and carries accepted bids through to settlement."""

    role = "driver"

    def __init__(
        self,
        signer: Signer,
        transport: Transport,
        config: Optional[RideConfig] = None,
        *,
        pricing: Optional[PricingConfig] = None,
        estimator: Optional[TripEstimator] = None,
        payments: Optional[PaymentInstructionGenerator] = None,
        registry: Optional[NegotiationRegistry[DriverBid]] = None,
        bid_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(signer, transport, config, clock=clock)
        self.pricing = pricing or PricingConfig()
        self.estimator = estimator or FixedTripEstimator()
        self.payments = payments or PlaceholderInvoiceGenerator()
        self.bids: NegotiationRegistry[DriverBid] = (
            registry if registry is not None else NegotiationRegistry()
        )
        self._bid_id_factory = bid_id_factory
        # (rider_pubkey, request_id) -> bid_id, so a redelivered request is not bid twice
        self._bid_for_request: RecentKeys[tuple[str, str], str] = RecentKeys(
            self.config.dedupe_capacity
        )

    def subscription_filters(self) -> Iterable[EventFilter]:
        return [
            EventFilter.build(d=[MessageType.RIDE_REQUEST.value]),
            EventFilter.build(
                d=[
                    MessageType.INVOICE_REQUEST.value,
                    MessageType.RIDE_ACCEPT.value,
                    MessageType.RIDE_RECEIPT.value,
                ],
                p=[self.identity],
            ),
        ]

    def handlers(self) -> dict[MessageType, Handler]:
        return {
            MessageType.RIDE_REQUEST: self._on_request,
            MessageType.INVOICE_REQUEST: self._on_invoice_request,
            MessageType.RIDE_ACCEPT: self._on_acceptance,
            MessageType.RIDE_RECEIPT: self._on_receipt,
        }

    # ------------------------------------------------------------------
    # Bidding
    # ------------------------------------------------------------------

    async def _on_request(self, message: InboundMessage) -> None:
        request: RideRequest = message.payload
        key = (message.sender, request.request_id)
        if key in self._bid_for_request:
            self.logger.debug("Already bid on request %s", request.request_id)
            return

        quote = quote_ride(self.estimator.estimate(request), self.pricing)
        try:
            bid = parse_payload(MessageType.RIDE_BID, {
                "request_id": request.request_id,
                "bid_id": self._bid_id_factory(),
                "total_sats": quote.total_sats,
                "deposit_sats": quote.deposit_sats,
                "eta_mins": quote.eta_mins,
                "payment_modes_supported": list(self.pricing.payment_modes_supported),
            })
        except SchemaError as exc:
            self.logger.warning("Declined request %s: quote is not biddable: %s", request.request_id, exc)
            return

        record = self.bids.add(bid.bid_id, DriverBid(
            bid_id=bid.bid_id,
            request_id=request.request_id,
            request_event_id=message.event_id,
            rider_pubkey=message.sender,
            total_sats=bid.total_sats,
            deposit_sats=bid.deposit_sats,
            eta_mins=bid.eta_mins,
        ))
        self._bid_for_request.add(key, bid.bid_id)

        envelope = await self.publish(
            MessageType.RIDE_BID,
            bid,
            reference=message.event_id,
            targets=[message.sender],
        )
        if envelope is None:
            return
        record.bid_event_id = envelope.id
        record.advance(DriverPhase.BID_SENT)
        self.logger.info(
            "Sent bid: request=%s bid=%s total=%d deposit=%d eta=%d",
            request.request_id, bid.bid_id, bid.total_sats, bid.deposit_sats, bid.eta_mins,
        )

    # ------------------------------------------------------------------
    # Invoice
    # ------------------------------------------------------------------

    async def _on_invoice_request(self, message: InboundMessage) -> None:
        request: InvoiceRequest = message.payload
        record = self._bid_from_rider(request.bid_id, request.request_id, message.sender)
        if request.amount_sats != record.total_sats:
            raise ProtocolViolation(
                f"invoice request for bid {request.bid_id} asks {request.amount_sats} sats, "
                f"bid total is {record.total_sats}"
            )

        try:
            instruction = await self.payments.generate(
                request.payment_mode, request.amount_sats, request.request_id, request.bid_id,
            )
        except PaymentError as exc:
            self.logger.warning("Could not produce payment instruction for bid %s: %s", request.bid_id, exc)
            return

        response = InvoiceResponse(
            request_id=request.request_id,
            bid_id=request.bid_id,
            amount_sats=instruction.amount_sats,
            payment_mode=instruction.mode,
            invoice=instruction.invoice,
            address=instruction.address,
        )
        await self.publish(
            MessageType.INVOICE_RESPONSE,
            response,
            reference=message.event_id,
            targets=[record.rider_pubkey],
        )
        self.logger.info(
            "Invoice sent: bid=%s amount=%d mode=%s",
            request.bid_id, response.amount_sats, response.payment_mode.value,
        )

    # ------------------------------------------------------------------
    # Acceptance and progress
    # ------------------------------------------------------------------

    async def _on_acceptance(self, message: InboundMessage) -> None:
        acceptance: RideAcceptance = message.payload
        if acceptance.driver_pubkey != self.identity:
            raise ProtocolViolation(f"acceptance for bid {acceptance.bid_id} names another driver")
        record = self._bid_from_rider(acceptance.bid_id, acceptance.request_id, message.sender)
        if acceptance.rider_pubkey != record.rider_pubkey:
            raise ProtocolViolation(f"acceptance for bid {acceptance.bid_id} names another rider")
        if message.reference is not None and message.reference != record.bid_event_id:
            raise ProtocolViolation(f"acceptance for bid {acceptance.bid_id} references a different bid event")

        if record.phase is not DriverPhase.BID_SENT:
            self.logger.info("Duplicate acceptance for bid %s ignored (%s)", record.bid_id, record.phase.value)
            return
        # Recorded before any await so a second acceptance can never pass the check above.
        record.advance(DriverPhase.ACCEPTED)
        record.acceptance_event_id = message.event_id
        self.logger.info("Bid accepted: request=%s bid=%s", record.request_id, record.bid_id)

        await self._emit_status(record, RideStatus.EN_ROUTE)
        self.timers.schedule(
            record.bid_id,
            self.config.arrived_delay_seconds,
            lambda: self._progress(record.bid_id, RideStatus.ARRIVED),
            label="arrived",
        )

    async def _progress(self, bid_id: str, status: RideStatus) -> None:
        record = self.bids.get(bid_id)
        if record is None or record.phase is not DriverPhase.ACCEPTED:
            return
        await self._emit_status(record, status)
        if status is RideStatus.ARRIVED:
            self.timers.schedule(
                bid_id,
                self.config.completed_delay_seconds,
                lambda: self._progress(bid_id, RideStatus.COMPLETED),
                label="completed",
            )

    async def _emit_status(self, record: DriverBid, status: RideStatus) -> None:
        update = StatusUpdate(
            request_id=record.request_id,
            bid_id=record.bid_id,
            status=status,
            rider_pubkey=record.rider_pubkey,
            driver_pubkey=self.identity,
        )
        envelope = await self.publish(
            MessageType.RIDE_STATUS,
            update,
            reference=record.acceptance_event_id,
            targets=[record.rider_pubkey],
        )
        if envelope is not None:
            record.statuses_sent.append(status)
            self.logger.info("Status sent: bid=%s status=%s", record.bid_id, status.value)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _on_receipt(self, message: InboundMessage) -> None:
        receipt: RideReceipt = message.payload
        if receipt.driver_pubkey != self.identity:
            raise ProtocolViolation(f"receipt for bid {receipt.bid_id} names another driver")
        record = self._bid_from_rider(receipt.bid_id, receipt.request_id, message.sender)
        if record.phase is DriverPhase.SETTLED:
            self.logger.debug("Receipt for settled bid %s ignored", record.bid_id)
            return
        if record.phase is not DriverPhase.ACCEPTED:
            raise ProtocolViolation(f"receipt for bid {record.bid_id} before acceptance")
        if receipt.rider_pubkey != record.rider_pubkey:
            raise ProtocolViolation(f"receipt for bid {record.bid_id} names another rider")
        if receipt.total_sats != record.total_sats:
            raise ProtocolViolation(
                f"receipt total {receipt.total_sats} differs from committed total "
                f"{record.total_sats} for bid {record.bid_id}"
            )
        if not verify_receipt(receipt):
            raise AuthenticityError(f"receipt for bid {record.bid_id} has an invalid detached signature")

        record.receipt = receipt
        record.advance(DriverPhase.SETTLED)
        self.timers.cancel(record.bid_id)
        self.logger.info(
            "Bid settled: request=%s bid=%s total=%d",
            record.request_id, record.bid_id, receipt.total_sats,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _bid_from_rider(self, bid_id: str, request_id: str, sender: str) -> DriverBid:
        """A known bid whose request and rider match the inbound message."""
        record = self.bids.get(bid_id)
        if record is None or record.phase is DriverPhase.IDLE:
            raise ProtocolViolation(f"unknown bid {bid_id}")
        if request_id != record.request_id:
            raise ProtocolViolation(f"bid {bid_id} belongs to request {record.request_id}, not {request_id}")
        if sender != record.rider_pubkey:
            raise ProtocolViolation(f"message for bid {bid_id} not signed by its rider")
        return record
