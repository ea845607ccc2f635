"""
config.py — Environment-driven configuration for satoshi-ride.

All settings have defaults so a developer only needs to export
NOSTR_SK_HEX for a working rider or driver.
"""

import os
import re

from pydantic import BaseModel, field_validator

from .schema import PaymentMode

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")


def _modes_from_env(name: str) -> list[PaymentMode]:
    raw = os.getenv(name, "LN,ONCHAIN")
    return [PaymentMode(part.strip()) for part in raw.split(",") if part.strip()]


class RideConfig(BaseModel):
    """
    Agent-wide protocol settings.

    Reads from environment variables by default:
        NOSTR_SK_HEX             — agent secret key (64 hex chars)
        BID_COLLECTION_MS        — rider bid window in ms (default: 10000)
        RIDE_ARRIVED_DELAY_MS    — driver en_route -> arrived delay (default: 5000)
        RIDE_COMPLETED_DELAY_MS  — driver arrived -> completed delay (default: 5000)
        RIDE_PAYMENT_MODES       — rider preference order (default: LN,ONCHAIN)
        RIDE_DEDUPE_CAPACITY     — handled envelope ids remembered (default: 10000)
    """

    secret_key_hex: str = os.getenv("NOSTR_SK_HEX", "")
    bid_collection_ms: int = int(os.getenv("BID_COLLECTION_MS", "10000"))
    arrived_delay_ms: int = int(os.getenv("RIDE_ARRIVED_DELAY_MS", "5000"))
    completed_delay_ms: int = int(os.getenv("RIDE_COMPLETED_DELAY_MS", "5000"))
    payment_modes: list[PaymentMode] = _modes_from_env("RIDE_PAYMENT_MODES")
    dedupe_capacity: int = int(os.getenv("RIDE_DEDUPE_CAPACITY", "10000"))

    @field_validator("secret_key_hex")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        v = v.strip()
        if v and not _HEX64.match(v):
            raise ValueError("secret_key_hex must be 64 hex characters")
        return v.lower()

    @field_validator("bid_collection_ms")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 1 or v > 600_000:
            raise ValueError("bid_collection_ms must be between 1 and 600000")
        return v

    @field_validator("arrived_delay_ms", "completed_delay_ms")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0 or v > 3_600_000:
            raise ValueError("progress delays must be between 0 and 3600000 ms")
        return v

    @field_validator("payment_modes")
    @classmethod
    def validate_modes(cls, v: list[PaymentMode]) -> list[PaymentMode]:
        if not v:
            raise ValueError("payment_modes must not be empty")
        return v

    @field_validator("dedupe_capacity")
    @classmethod
    def validate_dedupe_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("dedupe_capacity must be at least 1")
        return v

    @property
    def bid_collection_seconds(self) -> float:
        return self.bid_collection_ms / 1000

    @property
    def arrived_delay_seconds(self) -> float:
        return self.arrived_delay_ms / 1000

    @property
    def completed_delay_seconds(self) -> float:
        return self.completed_delay_ms / 1000


class PricingConfig(BaseModel):
    """
    Driver quote parameters. Amounts are sats; rates are per mile and per minute.

    Reads from environment variables by default:
        RIDE_BASE_FEE_SATS, RIDE_RATE_DISTANCE_SATS, RIDE_RATE_TIME_SATS,
        RIDE_SURGE_PCT, RIDE_RISK_BUFFER_SATS, RIDE_DEPOSIT_PCT,
        RIDE_DEPOSIT_CAP_SATS, RIDE_PAYMENT_MODES_SUPPORTED
    """

    base_fee: int = int(os.getenv("RIDE_BASE_FEE_SATS", "1500"))
    rate_distance: int = int(os.getenv("RIDE_RATE_DISTANCE_SATS", "1200"))
    rate_time: int = int(os.getenv("RIDE_RATE_TIME_SATS", "80"))
    surge_pct: float = float(os.getenv("RIDE_SURGE_PCT", "10"))
    risk_buffer: int = int(os.getenv("RIDE_RISK_BUFFER_SATS", "500"))
    deposit_pct: float = float(os.getenv("RIDE_DEPOSIT_PCT", "0.15"))
    deposit_cap: int = int(os.getenv("RIDE_DEPOSIT_CAP_SATS", "2000"))
    payment_modes_supported: list[PaymentMode] = _modes_from_env(
        "RIDE_PAYMENT_MODES_SUPPORTED"
    )

    @field_validator("base_fee", "rate_distance", "rate_time", "risk_buffer", "deposit_cap")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("pricing amounts must not be negative")
        return v

    @field_validator("surge_pct")
    @classmethod
    def validate_surge(cls, v: float) -> float:
        if v < -100 or v > 1000:
            raise ValueError("surge_pct must be between -100 and 1000")
        return v

    @field_validator("deposit_pct")
    @classmethod
    def validate_deposit_pct(cls, v: float) -> float:
        if v < 0 or v > 1:
            raise ValueError("deposit_pct must be between 0 and 1")
        return v

    @field_validator("payment_modes_supported")
    @classmethod
    def validate_modes(cls, v: list[PaymentMode]) -> list[PaymentMode]:
        if not v:
            raise ValueError("payment_modes_supported must not be empty")
        return v


class BitcoinRpcConfig(BaseModel):
    """
    Bitcoin Core JSON-RPC endpoint used for on-chain payment addresses.

    Reads from environment variables by default:
        BTC_RPC_URL            — node RPC URL (required for on-chain mode)
        BTC_RPC_USERNAME       — basic-auth user
        BTC_RPC_PASSWORD       — basic-auth password
        BTC_ALLOW_NON_MAINNET  — allow test chains (default: false)
        BTC_ADDRESS_TYPE       — getnewaddress address type (optional)
        BTC_RPC_TIMEOUT        — HTTP timeout in seconds (default: 30)
    """

    url: str = os.getenv("BTC_RPC_URL", "")
    username: str = os.getenv("BTC_RPC_USERNAME", "")
    password: str = os.getenv("BTC_RPC_PASSWORD", "")
    allow_non_mainnet: bool = os.getenv("BTC_ALLOW_NON_MAINNET", "false").lower() == "true"
    address_type: str = os.getenv("BTC_ADDRESS_TYPE", "")
    timeout_seconds: int = int(os.getenv("BTC_RPC_TIMEOUT", "30"))

    @field_validator("address_type")
    @classmethod
    def validate_address_type(cls, v: str) -> str:
        allowed = {"", "legacy", "p2sh-segwit", "bech32", "bech32m"}
        if v not in allowed:
            raise ValueError(f"address_type must be one of {allowed}, got '{v}'")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1 or v > 300:
            raise ValueError("timeout_seconds must be between 1 and 300")
        return v
