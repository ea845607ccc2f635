"""
test_payments.py — Tests for the payment collaborators.

Tests cover:
  - Placeholder instructions (deterministic, mode-specific)
  - Bitcoin RPC address issuance with and without address type
  - Mainnet check (refusal, override, checked once)
  - RPC-level errors carried in the JSON body
  - HTTP error code mapping to typed exceptions
  - Retry behavior (5xx, recovery)
  - Lightning requests without a Lightning generator
  - Context manager support

Run with:
    pytest tests/test_payments.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest

from satoshi_ride.config import BitcoinRpcConfig
from satoshi_ride.payments import (
    BitcoinRpcAuthError,
    BitcoinRpcClient,
    BitcoinRpcError,
    BitcoinRpcNetworkError,
    BitcoinRpcPaymentGenerator,
    ChainMismatchError,
    PaymentError,
    PlaceholderInvoiceGenerator,
)
from satoshi_ride.schema import PaymentMode

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

class MockRpcTransport(httpx.BaseTransport):
    """
    Plays back queued responses per RPC method name, in FIFO order, and
    records every request body it saw.
    """

    def __init__(self):
        self._queue: list[tuple[str, int, dict]] = []
        self.calls: list[dict] = []

    def add(self, method: str, status: int, body: dict) -> "MockRpcTransport":
        self._queue.append((method, status, body))
        return self

    def ok(self, method: str, result) -> "MockRpcTransport":
        return self.add(method, 200, {"result": result, "error": None, "id": "satoshi-ride"})

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        for i, (method, status, payload) in enumerate(self._queue):
            if method == body["method"]:
                self._queue.pop(i)
                return httpx.Response(
                    status_code=status,
                    content=json.dumps(payload).encode(),
                    headers={"Content-Type": "application/json"},
                    request=request,
                )
        raise AssertionError(f"MockRpcTransport: unexpected call {body['method']}")


def _make_client(transport: MockRpcTransport, **config) -> BitcoinRpcClient:
    http = httpx.Client(transport=transport, base_url="http://node.test:8332")
    return BitcoinRpcClient(BitcoinRpcConfig(url="http://node.test:8332", **config), http_client=http, backoff=0)


MAINNET = {"chain": "main", "blocks": 900000}
REGTEST = {"chain": "regtest", "blocks": 101}


# ---------------------------------------------------------------------------
# Placeholder generator
# ---------------------------------------------------------------------------

class TestPlaceholderInvoiceGenerator:
    @pytest.mark.asyncio
    async def test_ln_invoice_is_deterministic(self):
        gen = PlaceholderInvoiceGenerator()
        first = await gen.generate(PaymentMode.LN, 18000, "R1", "B1")
        second = await gen.generate(PaymentMode.LN, 18000, "R1", "B1")
        assert first == second
        assert first.invoice.startswith("lnbc18000n1dev")
        assert first.address is None
        assert first.amount_sats == 18000

    @pytest.mark.asyncio
    async def test_different_bids_get_different_invoices(self):
        gen = PlaceholderInvoiceGenerator()
        a = await gen.generate(PaymentMode.LN, 18000, "R1", "B1")
        b = await gen.generate(PaymentMode.LN, 18000, "R1", "B2")
        assert a.invoice != b.invoice

    @pytest.mark.asyncio
    async def test_onchain_gives_address(self):
        instruction = await PlaceholderInvoiceGenerator().generate(PaymentMode.ONCHAIN, 5000, "R1", "B1")
        assert instruction.invoice is None
        assert instruction.address.startswith("bc1qdev")


# ---------------------------------------------------------------------------
# Bitcoin RPC client
# ---------------------------------------------------------------------------

class TestBitcoinRpcClient:
    def test_requires_url_or_injected_client(self):
        with pytest.raises(BitcoinRpcError, match="BTC_RPC_URL"):
            BitcoinRpcClient(BitcoinRpcConfig(url=""))

    def test_new_address_on_mainnet(self):
        transport = MockRpcTransport().ok("getblockchaininfo", MAINNET).ok("getnewaddress", "bc1qnode")
        client = _make_client(transport)
        assert client.get_new_address("ride:B1") == "bc1qnode"
        assert transport.calls[1]["params"] == ["ride:B1"]
        assert transport.calls[1]["jsonrpc"] == "1.0"

    def test_address_type_is_passed(self):
        transport = MockRpcTransport().ok("getblockchaininfo", MAINNET).ok("getnewaddress", "bc1pnode")
        client = _make_client(transport, address_type="bech32m")
        client.get_new_address("ride:B1")
        assert transport.calls[1]["params"] == ["ride:B1", "bech32m"]

    def test_chain_checked_once(self):
        transport = (
            MockRpcTransport()
            .ok("getblockchaininfo", MAINNET)
            .ok("getnewaddress", "bc1qa")
            .ok("getnewaddress", "bc1qb")
        )
        client = _make_client(transport)
        client.get_new_address()
        client.get_new_address()
        assert [c["method"] for c in transport.calls] == ["getblockchaininfo", "getnewaddress", "getnewaddress"]

    def test_refuses_non_mainnet(self):
        transport = MockRpcTransport().ok("getblockchaininfo", REGTEST)
        client = _make_client(transport)
        with pytest.raises(ChainMismatchError, match="regtest"):
            client.get_new_address()

    def test_non_mainnet_allowed_by_override(self):
        transport = MockRpcTransport().ok("getblockchaininfo", REGTEST).ok("getnewaddress", "bcrt1qx")
        client = _make_client(transport, allow_non_mainnet=True)
        assert client.get_new_address() == "bcrt1qx"

    def test_rpc_error_in_body(self):
        transport = MockRpcTransport().add(
            "getnewaddress", 500,
            {"result": None, "error": {"code": -12, "message": "Keypool ran out"}},
        )
        client = _make_client(transport)
        with pytest.raises(BitcoinRpcError, match="Keypool ran out"):
            client.call("getnewaddress")
        # RPC errors are not retried
        assert len(transport.calls) == 1

    def test_validate_address_rejects_invalid(self):
        transport = (
            MockRpcTransport()
            .ok("getblockchaininfo", MAINNET)
            .ok("validateaddress", {"isvalid": False})
        )
        client = _make_client(transport)
        with pytest.raises(BitcoinRpcError, match="Invalid on-chain address"):
            client.validate_address("nope")

    def test_401_raises_auth_error(self):
        transport = MockRpcTransport().add("getblockchaininfo", 401, {})
        client = _make_client(transport)
        with pytest.raises(BitcoinRpcAuthError):
            client.get_blockchain_info()

    def test_500_retries_and_raises_network_error(self):
        transport = MockRpcTransport()
        for _ in range(3):
            transport.add("getblockchaininfo", 503, {})
        client = _make_client(transport)
        with pytest.raises(BitcoinRpcNetworkError):
            client.get_blockchain_info()
        assert len(transport.calls) == 3

    def test_500_then_200_succeeds(self):
        transport = MockRpcTransport().add("getblockchaininfo", 502, {}).ok("getblockchaininfo", MAINNET)
        client = _make_client(transport)
        assert client.get_blockchain_info()["chain"] == "main"

    def test_unexpected_status(self):
        transport = MockRpcTransport().add("getblockchaininfo", 418, {})
        client = _make_client(transport)
        with pytest.raises(BitcoinRpcError, match="418"):
            client.get_blockchain_info()

    def test_context_manager_closes(self):
        transport = MockRpcTransport()
        with _make_client(transport) as client:
            pass
        assert client._http.is_closed


# ---------------------------------------------------------------------------
# Bitcoin RPC payment generator
# ---------------------------------------------------------------------------

class TestBitcoinRpcPaymentGenerator:
    @pytest.mark.asyncio
    async def test_onchain_address_from_node(self):
        transport = MockRpcTransport().ok("getblockchaininfo", MAINNET).ok("getnewaddress", "bc1qnode")
        gen = BitcoinRpcPaymentGenerator(_make_client(transport))
        instruction = await gen.generate(PaymentMode.ONCHAIN, 18000, "R1", "B1")
        assert instruction.address == "bc1qnode"
        assert instruction.amount_sats == 18000
        assert transport.calls[1]["params"] == ["ride:B1"]

    @pytest.mark.asyncio
    async def test_ln_without_lightning_generator_fails(self):
        gen = BitcoinRpcPaymentGenerator(_make_client(MockRpcTransport()))
        with pytest.raises(PaymentError, match="Lightning"):
            await gen.generate(PaymentMode.LN, 18000, "R1", "B1")

    @pytest.mark.asyncio
    async def test_ln_delegates_to_lightning_generator(self):
        gen = BitcoinRpcPaymentGenerator(
            _make_client(MockRpcTransport()), lightning=PlaceholderInvoiceGenerator(),
        )
        instruction = await gen.generate(PaymentMode.LN, 18000, "R1", "B1")
        assert instruction.invoice.startswith("lnbc18000")
