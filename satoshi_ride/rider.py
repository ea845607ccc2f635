"""
rider.py — Rider negotiation state machine.

    requested -> collecting -> selected -> accepted -> invoice_exchanged
              -> awaiting_completion -> settled
    collecting -> abandoned (window closed with no valid bid)

One RiderNegotiation per request_id lives in the agent's registry. Inbound
messages that don't fit the record's current phase raise ProtocolViolation
and are dropped by the runtime without touching the record.
"""

from __future__ import annotations

import inspect
import uuid
from typing import Awaitable, Callable, Iterable, Optional, Sequence, Union

from .agent import Handler, ProtocolAgent
from .config import RideConfig
from .errors import FatalError, ProtocolViolation
from .gate import InboundMessage
from .models import RIDER_COMMITTED, NegotiationRegistry, RiderNegotiation, RiderPhase
from .receipt import build_receipt
from .schema import (
    InvoiceRequest,
    InvoiceResponse,
    MessageType,
    PaymentMode,
    RideAcceptance,
    RideBid,
    RideRequest,
    RideStatus,
    StatusUpdate,
    parse_payload,
)
from .selection import BidCandidate
from .signing import Signer
from .transport import EventFilter, Transport

PaymentHandler = Callable[[InvoiceResponse], Union[Awaitable[None], None]]


def choose_payment_mode(
    preferred: Sequence[PaymentMode],
    supported: Sequence[PaymentMode],
) -> PaymentMode:
    """First rider-preferred mode the driver supports, else the driver's first."""
    for mode in preferred:
        if mode in supported:
            return mode
    return supported[0]


class RiderAgent(ProtocolAgent):
    """Requests rides, collects bids, commits to one, and settles with a receipt."""

    role = "rider"

    def __init__(
        self,
        signer: Signer,
        transport: Transport,
        config: Optional[RideConfig] = None,
        *,
        registry: Optional[NegotiationRegistry[RiderNegotiation]] = None,
        payment_handler: Optional[PaymentHandler] = None,
        request_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(signer, transport, config, clock=clock)
        self.negotiations: NegotiationRegistry[RiderNegotiation] = (
            registry if registry is not None else NegotiationRegistry()
        )
        self._payment_handler = payment_handler
        self._request_id_factory = request_id_factory

    def subscription_filters(self) -> Iterable[EventFilter]:
        return [
            EventFilter.build(
                d=[
                    MessageType.RIDE_BID.value,
                    MessageType.INVOICE_RESPONSE.value,
                    MessageType.RIDE_STATUS.value,
                ],
                p=[self.identity],
            )
        ]

    def handlers(self) -> dict[MessageType, Handler]:
        return {
            MessageType.RIDE_BID: self._on_bid,
            MessageType.INVOICE_RESPONSE: self._on_invoice_response,
            MessageType.RIDE_STATUS: self._on_status,
        }

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request_ride(
        self,
        *,
        pickup_geohash: str,
        dropoff_geohash: str,
        time_window_mins: int,
        max_total_sats: int,
        max_eta_mins: int,
        payment_modes: Optional[Sequence[PaymentMode]] = None,
        note: Optional[str] = None,
    ) -> RiderNegotiation:
        """
        Broadcast a new ride request and open its bid-collection window.

        Raises:
            SchemaError: if the request fields are invalid.
            FatalError:  if the request cannot be signed.
        """
        data = {
            "id": self._request_id_factory(),
            "pickup_geohash": pickup_geohash,
            "dropoff_geohash": dropoff_geohash,
            "time_window_mins": time_window_mins,
            "max_total_sats": max_total_sats,
            "max_eta_mins": max_eta_mins,
            "payment_modes": list(payment_modes or self.config.payment_modes),
        }
        if note is not None:
            data["note"] = note
        request = parse_payload(MessageType.RIDE_REQUEST, data)

        record = self.negotiations.add(request.request_id, RiderNegotiation(request=request))
        envelope = await self.publish(MessageType.RIDE_REQUEST, request)
        if envelope is None:
            return record
        record.request_event_id = envelope.id
        record.advance(RiderPhase.COLLECTING)
        self.timers.schedule(
            request.request_id,
            self.config.bid_collection_seconds,
            lambda: self._close_window(request.request_id),
            label="bid-window",
        )
        self.logger.info(
            "Ride request published: id=%s max_total=%d window=%dms",
            request.request_id, request.max_total_sats, self.config.bid_collection_ms,
        )
        return record

    # ------------------------------------------------------------------
    # Bids and selection
    # ------------------------------------------------------------------

    async def _on_bid(self, message: InboundMessage) -> None:
        bid: RideBid = message.payload
        record = self._record_for(bid.request_id)
        if record.phase is not RiderPhase.COLLECTING:
            raise ProtocolViolation(
                f"bid {bid.bid_id} arrived while request {bid.request_id} is {record.phase.value}"
            )
        if message.reference is not None and message.reference != record.request_event_id:
            raise ProtocolViolation(f"bid {bid.bid_id} references a different request event")

        replaced = record.candidates.upsert(
            BidCandidate(bid=bid, event_id=message.event_id, driver_pubkey=message.sender)
        )
        self.logger.info(
            "Bid %s: request=%s bid=%s total=%d eta=%d",
            "replaced" if replaced else "received",
            bid.request_id, bid.bid_id, bid.total_sats, bid.eta_mins,
        )

    async def _close_window(self, request_id: str) -> None:
        record = self.negotiations.get(request_id)
        if record is None or record.phase is not RiderPhase.COLLECTING:
            return

        winner = record.candidates.winner()
        if winner is None:
            record.advance(RiderPhase.ABANDONED)
            self.logger.warning("No bids for request %s; negotiation abandoned", request_id)
            return

        record.winner = winner
        record.advance(RiderPhase.SELECTED)
        self.logger.info(
            "Bid selected: request=%s bid=%s total=%d eta=%d (of %d)",
            request_id, winner.bid_id, winner.bid.total_sats, winner.bid.eta_mins,
            len(record.candidates),
        )

        acceptance = RideAcceptance(
            request_id=request_id,
            bid_id=winner.bid_id,
            rider_pubkey=self.identity,
            driver_pubkey=winner.driver_pubkey,
        )
        envelope = await self.publish(
            MessageType.RIDE_ACCEPT,
            acceptance,
            reference=winner.event_id,
            targets=[winner.driver_pubkey],
        )
        if envelope is None:
            return
        record.acceptance_event_id = envelope.id
        record.advance(RiderPhase.ACCEPTED)
        self.logger.info("Ride acceptance published: request=%s bid=%s", request_id, winner.bid_id)

        invoice_request = InvoiceRequest(
            request_id=request_id,
            bid_id=winner.bid_id,
            amount_sats=winner.bid.total_sats,
            payment_mode=choose_payment_mode(
                record.request.payment_modes, winner.bid.payment_modes_supported
            ),
        )
        await self.publish(
            MessageType.INVOICE_REQUEST,
            invoice_request,
            reference=winner.event_id,
            targets=[winner.driver_pubkey],
        )
        self.logger.info(
            "Invoice requested: bid=%s amount=%d mode=%s",
            winner.bid_id, invoice_request.amount_sats, invoice_request.payment_mode.value,
        )

    # ------------------------------------------------------------------
    # Invoice
    # ------------------------------------------------------------------

    async def _on_invoice_response(self, message: InboundMessage) -> None:
        invoice: InvoiceResponse = message.payload
        record = self._committed_record(invoice.request_id, invoice.bid_id, message.sender)
        if invoice.amount_sats != record.total_sats:
            raise ProtocolViolation(
                f"invoice for bid {invoice.bid_id} is {invoice.amount_sats} sats, "
                f"committed total is {record.total_sats}"
            )
        if record.invoice is not None:
            self.logger.debug("Invoice for bid %s already received", invoice.bid_id)
            return

        record.invoice = invoice
        if record.phase is RiderPhase.ACCEPTED:
            record.advance(RiderPhase.INVOICE_EXCHANGED)
        self.logger.info(
            "Invoice received: bid=%s amount=%d mode=%s",
            invoice.bid_id, invoice.amount_sats, invoice.payment_mode.value,
        )
        if self._payment_handler is not None:
            await self._pay(invoice)

    async def _pay(self, invoice: InvoiceResponse) -> None:
        """Hand the invoice to the payment handler, which owns its own failures."""
        try:
            result = self._payment_handler(invoice)
            if inspect.isawaitable(result):
                await result
        except FatalError:
            raise
        except Exception:
            self.logger.exception("Payment handler failed for bid %s", invoice.bid_id)

    # ------------------------------------------------------------------
    # Progress and settlement
    # ------------------------------------------------------------------

    async def _on_status(self, message: InboundMessage) -> None:
        update: StatusUpdate = message.payload
        record = self._record_for(update.request_id)
        if record.phase is RiderPhase.SETTLED and update.bid_id == record.bid_id:
            self.logger.debug("Status %s after settlement ignored", update.status.value)
            return
        record = self._committed_record(update.request_id, update.bid_id, message.sender)
        if update.rider_pubkey != self.identity or update.driver_pubkey != record.driver_pubkey:
            raise ProtocolViolation(f"status for bid {update.bid_id} names the wrong parties")

        if update.status in record.statuses:
            self.logger.debug("Status %s for bid %s already recorded", update.status.value, update.bid_id)
            return
        record.statuses[update.status] = message.event_id
        self.logger.info("Ride status: bid=%s status=%s", update.bid_id, update.status.value)

        if update.status is RideStatus.COMPLETED:
            await self._settle(record, message.event_id)
        elif record.phase is not RiderPhase.AWAITING_COMPLETION:
            record.advance(RiderPhase.AWAITING_COMPLETION)

    async def _settle(self, record: RiderNegotiation, status_event_id: str) -> None:
        receipt = build_receipt(
            self.signer,
            request_id=record.request_id,
            bid_id=record.bid_id,
            total_sats=record.total_sats,
            timestamp=int(self.clock()),
            driver_pubkey=record.driver_pubkey,
        )
        envelope = await self.publish(
            MessageType.RIDE_RECEIPT,
            receipt,
            reference=status_event_id,
            targets=[record.driver_pubkey, self.identity],
        )
        if envelope is None:
            return
        record.receipt = receipt
        record.advance(RiderPhase.SETTLED)
        self.logger.info(
            "Ride settled: request=%s bid=%s total=%d",
            record.request_id, record.bid_id, receipt.total_sats,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _record_for(self, request_id: str) -> RiderNegotiation:
        record = self.negotiations.get(request_id)
        if record is None:
            raise ProtocolViolation(f"unknown request {request_id}")
        return record

    def _committed_record(self, request_id: str, bid_id: str, sender: str) -> RiderNegotiation:
        """The record for a request whose accepted bid is ``bid_id`` from ``sender``."""
        record = self._record_for(request_id)
        if record.phase not in RIDER_COMMITTED:
            raise ProtocolViolation(
                f"request {request_id} is {record.phase.value}, not awaiting driver messages"
            )
        if bid_id != record.bid_id:
            raise ProtocolViolation(f"bid {bid_id} is not the accepted bid for {request_id}")
        if sender != record.driver_pubkey:
            raise ProtocolViolation(f"message for bid {bid_id} not signed by the accepted driver")
        return record
