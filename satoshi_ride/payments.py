"""
payments.py — Payment collaborators: invoice/address generation for drivers.

Real settlement (paying, waiting for confirmations) is out of scope. This
module produces the payment *instruction* a driver returns in an
invoice_response:

  - PlaceholderInvoiceGenerator — deterministic development instructions
    derived from (amount, request_id, bid_id); nothing is payable.
  - BitcoinRpcPaymentGenerator  — fresh on-chain addresses from a Bitcoin
    Core node through BitcoinRpcClient.

BitcoinRpcClient design:
  - Every method raises a typed PaymentError subclass on failure so callers
    don't need to inspect raw HTTP responses
  - Retry logic built in for transient failures (address generation is safe
    to repeat; a retried call may just burn an extra address)
  - Pluggable transport for testing (inject a mock httpx.Client)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from .config import BitcoinRpcConfig
from .errors import RideProtocolError
from .schema import PaymentMode

logger = logging.getLogger("satoshi_ride.payments")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PaymentError(RideProtocolError):
    """Base exception for payment collaborator failures."""


class BitcoinRpcError(PaymentError):
    """The node answered with an RPC error or an unexpected HTTP status."""


class BitcoinRpcAuthError(BitcoinRpcError):
    """RPC credentials missing or rejected."""


class BitcoinRpcNetworkError(BitcoinRpcError):
    """Unrecoverable network error after retries exhausted."""


class ChainMismatchError(PaymentError):
    """The node is not on mainnet and non-mainnet use was not allowed."""


# ---------------------------------------------------------------------------
# Payment instructions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PaymentInstruction:
    """What the driver tells the rider to pay: an LN invoice or an on-chain address."""
    mode: PaymentMode
    amount_sats: int
    invoice: Optional[str] = None
    address: Optional[str] = None


class PaymentInstructionGenerator(Protocol):
    async def generate(
        self,
        mode: PaymentMode,
        amount_sats: int,
        request_id: str,
        bid_id: str,
    ) -> PaymentInstruction: ...


def _instruction_seed(amount_sats: int, request_id: str, bid_id: str) -> str:
    return hashlib.sha256(f"{amount_sats}:{request_id}:{bid_id}".encode("utf-8")).hexdigest()


class PlaceholderInvoiceGenerator:
    """Deterministic, non-payable instructions for development and tests."""

    async def generate(
        self,
        mode: PaymentMode,
        amount_sats: int,
        request_id: str,
        bid_id: str,
    ) -> PaymentInstruction:
        seed = _instruction_seed(amount_sats, request_id, bid_id)
        if mode is PaymentMode.LN:
            return PaymentInstruction(mode, amount_sats, invoice=f"lnbc{amount_sats}n1dev{seed[:40]}")
        return PaymentInstruction(mode, amount_sats, address=f"bc1qdev{seed[:34]}")


class BitcoinRpcPaymentGenerator:
    """
    On-chain addresses come from the node. Lightning requests go to
    ``lightning`` if given; otherwise they fail with PaymentError.
    """

    def __init__(
        self,
        client: "BitcoinRpcClient",
        lightning: Optional[PaymentInstructionGenerator] = None,
    ):
        self._client = client
        self._lightning = lightning

    async def generate(
        self,
        mode: PaymentMode,
        amount_sats: int,
        request_id: str,
        bid_id: str,
    ) -> PaymentInstruction:
        if mode is PaymentMode.LN:
            if self._lightning is None:
                raise PaymentError("no Lightning invoice generator configured")
            return await self._lightning.generate(mode, amount_sats, request_id, bid_id)
        address = await asyncio.to_thread(self._client.get_new_address, f"ride:{bid_id}")
        logger.info("On-chain address issued: bid=%s amount=%d", bid_id, amount_sats)
        return PaymentInstruction(mode, amount_sats, address=address)


# ---------------------------------------------------------------------------
# Internal retry helper
# ---------------------------------------------------------------------------

def _with_retries(fn, *, retries: int = 3, backoff: float = 1.0, label: str = ""):
    """
    Execute fn(), retrying up to `retries` times on transient network errors
    or 5xx server errors. Raises BitcoinRpcNetworkError if all attempts fail.

    Not retried: auth errors, RPC errors, or any other typed PaymentError
    subclass — those indicate a problem with the request itself.
    """
    last_exc = None
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except (httpx.TimeoutException, httpx.NetworkError, BitcoinRpcNetworkError) as exc:
            last_exc = exc
            wait = backoff * (2 ** (attempt - 1))
            logger.warning(
                "Bitcoin RPC %s: retriable error on attempt %d/%d, retrying in %.1fs: %s",
                label, attempt, retries, wait, exc,
            )
            if attempt < retries:
                time.sleep(wait)
    raise BitcoinRpcNetworkError(
        f"{label} failed after {retries} attempts: {last_exc}"
    ) from last_exc


# ---------------------------------------------------------------------------
# Bitcoin Core client
# ---------------------------------------------------------------------------

class BitcoinRpcClient:
    """
    Minimal JSON-RPC 1.0 client for Bitcoin Core.

    Usage:
        with BitcoinRpcClient(BitcoinRpcConfig()) as node:
            address = node.get_new_address()
    """

    def __init__(
        self,
        config: BitcoinRpcConfig,
        http_client: Optional[httpx.Client] = None,
        retries: int = 3,
        backoff: float = 1.0,
    ):
        if not config.url and http_client is None:
            raise BitcoinRpcError("Set BTC_RPC_URL to your Bitcoin Core RPC endpoint")
        self._config = config
        auth = (config.username, config.password) if config.username and config.password else None
        self._http = http_client or httpx.Client(
            base_url=config.url,
            auth=auth,
            headers={"Content-Type": "application/json"},
            timeout=config.timeout_seconds,
        )
        self._retries = retries
        self._backoff = backoff
        self._chain_checked = False
        logger.info("BitcoinRpcClient initialized: url=%s", config.url or "(injected)")

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """Invoke one RPC method and return its ``result``."""
        body = {
            "jsonrpc": "1.0",
            "id": "satoshi-ride",
            "method": method,
            "params": params or [],
        }

        def _call():
            resp = self._http.post("", json=body)
            _raise_for_status(resp, method)
            return resp.json()

        try:
            data = _with_retries(_call, retries=self._retries, backoff=self._backoff, label=method)
        except PaymentError:
            raise
        except Exception as exc:
            raise BitcoinRpcError(f"Unexpected error calling {method}: {exc}") from exc

        error = data.get("error")
        if isinstance(error, dict):
            raise BitcoinRpcError(f"[{method}] RPC error {error.get('code')}: {error.get('message')}")
        if error:
            raise BitcoinRpcError(f"[{method}] RPC error: {error}")
        return data.get("result")

    def get_blockchain_info(self) -> dict:
        return self.call("getblockchaininfo")

    def require_mainnet(self) -> None:
        """Refuse to hand out addresses on a test chain unless explicitly allowed. Checked once."""
        if self._chain_checked:
            return
        chain = self.get_blockchain_info().get("chain")
        if chain != "main" and not self._config.allow_non_mainnet:
            raise ChainMismatchError(
                f"Bitcoin RPC is not on mainnet (chain={chain}). "
                "Set BTC_ALLOW_NON_MAINNET=true to override."
            )
        self._chain_checked = True

    def get_new_address(self, label: str = "") -> str:
        self.require_mainnet()
        params: list = []
        if self._config.address_type:
            params = [label, self._config.address_type]
        elif label:
            params = [label]
        return self.call("getnewaddress", params)

    def validate_address(self, address: str) -> None:
        """Raise BitcoinRpcError if the node considers ``address`` invalid."""
        self.require_mainnet()
        result = self.call("validateaddress", [address])
        if not result.get("isvalid"):
            raise BitcoinRpcError(f"Invalid on-chain address: {address}")

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _raise_for_status(resp: httpx.Response, operation: str) -> None:
    """
    Translate HTTP error codes into typed payment exceptions.

    Bitcoin Core answers RPC-level failures (unknown method, bad params)
    with HTTP 404/500 *and* a JSON body carrying ``error``; those are
    returned to the caller so the RPC error is reported, not retried.
    """
    if resp.is_success:
        return

    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return

    status = resp.status_code
    if status in (401, 403):
        raise BitcoinRpcAuthError(f"[{operation}] Unauthorized: check BTC_RPC_USERNAME/BTC_RPC_PASSWORD")
    if 500 <= status < 600:
        raise BitcoinRpcNetworkError(f"[{operation}] Server error {status}: {resp.text}")

    raise BitcoinRpcError(f"[{operation}] Unexpected {status}: {resp.text}")
