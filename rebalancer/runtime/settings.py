from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

from eth_account import Account
from eth_utils import is_address, to_checksum_address

from rebalancer.common import register_secret
from rebalancer.trading.errors import ConfigurationError
from rebalancer.trading.pricing import DEFAULT_PRICE_API_URL
from rebalancer.trading.quoters import DEFAULT_ROUTING_API_URL, MAX_V3_FEE, UNISWAP_V3_FACTORY_ADDRESS
from rebalancer.trading.types import (
    BPS_DENOMINATOR,
    POLYGON_CHAIN_ID,
    USDC_ADDRESS,
    WETH_ADDRESS,
    Asset,
    to_bool,
    to_decimal,
    to_int,
)

REQUIRED_KEYS = (
    "MAX_TRADE_NOTIONAL",
    "LOOKBACK_DAYS",
    "SLIPPAGE_BPS",
    "DEADLINE_SECONDS",
    "RPC_URL",
    "PRIVATE_KEY",
    "ROUTER_ADDRESS",
    "QUOTER_ADDRESS",
)

ROUTING_STRATEGIES = {"aggregated", "direct"}
MAX_TOKEN_DECIMALS = 77


def to_float(value: object, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def _strict_int(raw: str) -> int | None:
    try:
        return int(raw.strip())
    except ValueError:
        return None


class _EnvReader:
    """Collects every problem so a bad environment is reported in one go."""

    def __init__(self) -> None:
        self.problems: list[str] = []

    def text(self, key: str, default: str = "") -> str:
        return (os.getenv(key) or default).strip()

    def required(self, key: str) -> str:
        value = self.text(key)
        if not value:
            self.problems.append(f"{key} is required")
        return value

    def required_int(self, key: str, *, minimum: int, maximum: int | None = None) -> int:
        raw = self.required(key)
        if not raw:
            return minimum
        value = _strict_int(raw)
        if value is None or value < minimum or (maximum is not None and value > maximum):
            bounds = f">= {minimum}" if maximum is None else f"within {minimum}..{maximum}"
            self.problems.append(f"{key} must be an integer {bounds}, got {raw!r}")
            return minimum
        return value

    def optional_int(self, key: str, default: int, *, minimum: int, maximum: int) -> int:
        raw = self.text(key)
        if not raw:
            return default
        value = _strict_int(raw)
        if value is None or value < minimum or value > maximum:
            self.problems.append(f"{key} must be an integer within {minimum}..{maximum}, got {raw!r}")
            return default
        return value

    def required_decimal(self, key: str) -> Decimal:
        raw = self.required(key)
        if not raw:
            return Decimal(0)
        value = to_decimal(raw)
        if value is None or value <= 0:
            self.problems.append(f"{key} must be a positive number, got {raw!r}")
            return Decimal(0)
        return value

    def address(self, key: str, default: str = "", *, required: bool = False) -> str:
        raw = self.required(key) if required else self.text(key, default)
        if not raw:
            return ""
        if not is_address(raw):
            self.problems.append(f"{key} is not a valid address: {raw!r}")
            return ""
        return to_checksum_address(raw)


@dataclass(slots=True, frozen=True)
class AppSettings:
    max_trade_notional: Decimal
    lookback_days: int
    slippage_bps: int
    deadline_seconds: int
    rpc_url: str
    private_key: str = field(repr=False)
    router_address: str
    quoter_address: str
    wallet_address: str
    chain_id: int
    base_asset: Asset
    quote_asset: Asset
    routing_strategy: str
    routing_api_url: str
    routing_api_key: str = field(repr=False)
    routing_protocols: str
    factory_address: str
    pool_fee_tier: int
    price_api_url: str
    price_pair: str
    price_max_samples: int
    http_timeout_seconds: float
    quote_max_age_seconds: float
    gas_limit_buffer_pct: int
    gas_limit_cap: int
    dry_run: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        env = _EnvReader()

        max_trade_notional = env.required_decimal("MAX_TRADE_NOTIONAL")
        lookback_days = env.required_int("LOOKBACK_DAYS", minimum=1)
        slippage_bps = env.required_int("SLIPPAGE_BPS", minimum=0, maximum=BPS_DENOMINATOR)
        deadline_seconds = env.required_int("DEADLINE_SECONDS", minimum=1)
        rpc_url = env.required("RPC_URL")
        private_key = env.required("PRIVATE_KEY")
        router_address = env.address("ROUTER_ADDRESS", required=True)
        quoter_address = env.address("QUOTER_ADDRESS", required=True)

        derived_address = ""
        if private_key:
            register_secret(private_key)
            try:
                derived_address = Account.from_key(private_key).address
            except ValueError:
                env.problems.append("PRIVATE_KEY is not a valid secp256k1 private key")

        wallet_address = env.address("WALLET_ADDRESS")
        if wallet_address and derived_address and wallet_address != derived_address:
            env.problems.append("WALLET_ADDRESS does not match the address derived from PRIVATE_KEY")
        wallet_address = wallet_address or derived_address

        routing_strategy = env.text("ROUTING_STRATEGY", "aggregated").lower()
        if routing_strategy not in ROUTING_STRATEGIES:
            env.problems.append(
                f"ROUTING_STRATEGY must be one of {sorted(ROUTING_STRATEGIES)}, got {routing_strategy!r}"
            )

        base_asset = Asset(
            symbol=env.text("BASE_TOKEN_SYMBOL", "WETH"),
            address=env.address("BASE_TOKEN_ADDRESS", WETH_ADDRESS),
            decimals=env.optional_int("BASE_TOKEN_DECIMALS", 18, minimum=0, maximum=MAX_TOKEN_DECIMALS),
        )
        quote_asset = Asset(
            symbol=env.text("QUOTE_TOKEN_SYMBOL", "USDC"),
            address=env.address("QUOTE_TOKEN_ADDRESS", USDC_ADDRESS),
            decimals=env.optional_int("QUOTE_TOKEN_DECIMALS", 6, minimum=0, maximum=MAX_TOKEN_DECIMALS),
        )
        if base_asset.address and base_asset.address == quote_asset.address:
            env.problems.append("BASE_TOKEN_ADDRESS and QUOTE_TOKEN_ADDRESS must differ")

        factory_address = env.address("FACTORY_ADDRESS", UNISWAP_V3_FACTORY_ADDRESS)
        pool_fee_tier = env.optional_int("POOL_FEE_TIER", 500, minimum=1, maximum=MAX_V3_FEE)
        chain_id = env.optional_int("CHAIN_ID", POLYGON_CHAIN_ID, minimum=1, maximum=2**63 - 1)

        if env.problems:
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(env.problems),
                details={"problems": list(env.problems)},
            )

        return cls(
            max_trade_notional=max_trade_notional,
            lookback_days=lookback_days,
            slippage_bps=slippage_bps,
            deadline_seconds=deadline_seconds,
            rpc_url=rpc_url,
            private_key=private_key,
            router_address=router_address,
            quoter_address=quoter_address,
            wallet_address=wallet_address,
            chain_id=chain_id,
            base_asset=base_asset,
            quote_asset=quote_asset,
            routing_strategy=routing_strategy,
            routing_api_url=env.text("ROUTING_API_URL", DEFAULT_ROUTING_API_URL),
            routing_api_key=env.text("ROUTING_API_KEY"),
            routing_protocols=env.text("ROUTING_PROTOCOLS", "v3"),
            factory_address=factory_address,
            pool_fee_tier=pool_fee_tier,
            price_api_url=env.text("PRICE_API_URL", DEFAULT_PRICE_API_URL),
            price_pair=env.text("PRICE_PAIR", "ethusd").lower(),
            price_max_samples=max(2, to_int(os.getenv("PRICE_MAX_SAMPLES"), 365)),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 10.0)),
            quote_max_age_seconds=max(1.0, to_float(os.getenv("QUOTE_MAX_AGE_SECONDS"), 30.0)),
            gas_limit_buffer_pct=max(0, to_int(os.getenv("GAS_LIMIT_BUFFER_PCT"), 20)),
            gas_limit_cap=max(21_000, to_int(os.getenv("GAS_LIMIT_CAP"), 1_500_000)),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            log_level=env.text("LOG_LEVEL", "INFO").upper(),
        )

    def redacted(self) -> dict[str, object]:
        return {
            "wallet_address": self.wallet_address,
            "chain_id": self.chain_id,
            "base_asset": self.base_asset.symbol,
            "quote_asset": self.quote_asset.symbol,
            "max_trade_notional": str(self.max_trade_notional),
            "lookback_days": self.lookback_days,
            "slippage_bps": self.slippage_bps,
            "deadline_seconds": self.deadline_seconds,
            "routing_strategy": self.routing_strategy,
            "router_address": self.router_address,
            "dry_run": self.dry_run,
        }
