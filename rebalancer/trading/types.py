from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Protocol

POLYGON_CHAIN_ID = 137
WETH_ADDRESS = "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619"
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
BPS_DENOMINATOR = 10_000

TradeDirection = Literal["base_to_quote", "quote_to_base"]
PoolProtocol = Literal["v2", "v3"]
LegStatus = Literal["not_triggered", "skipped", "submitted", "dry_run", "failed"]

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_OPERATOR_ATTENTION = 3


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any) -> Decimal | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_epoch() -> float:
    return time.time()


@dataclass(slots=True, frozen=True)
class Asset:
    symbol: str
    address: str
    decimals: int

    def units(self, amount: int) -> Decimal:
        return Decimal(amount) / (Decimal(10) ** self.decimals)


@dataclass(slots=True, frozen=True)
class PriceSample:
    timestamp: int
    close: Decimal


@dataclass(slots=True, frozen=True)
class PriceSignal:
    latest: Decimal
    average: Decimal
    sample_count: int
    window_start: int
    window_end: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "latest": str(self.latest),
            "average": str(self.average),
            "sample_count": self.sample_count,
            "window_start": self.window_start,
            "window_end": self.window_end,
        }


@dataclass(slots=True, frozen=True)
class TradeIntent:
    direction: TradeDirection
    from_asset: Asset
    to_asset: Asset
    amount: int


@dataclass(slots=True, frozen=True)
class PoolHop:
    pool_address: str
    protocol: PoolProtocol
    token_in: str
    token_out: str
    fee: int | None = None
    liquidity: int | None = None
    sqrt_price_x96: int | None = None
    tick: int | None = None


@dataclass(slots=True, frozen=True)
class RoutePath:
    hops: tuple[PoolHop, ...]
    amount_in: int
    expected_out: int

    @property
    def protocol(self) -> PoolProtocol | None:
        protocols = {hop.protocol for hop in self.hops}
        if len(protocols) != 1:
            return None
        return next(iter(protocols))


@dataclass(slots=True, frozen=True)
class Route:
    paths: tuple[RoutePath, ...]

    @property
    def is_empty(self) -> bool:
        return not self.paths or any(not path.hops for path in self.paths)

    def describe(self) -> str:
        rendered: list[str] = []
        for path in self.paths:
            hops = " -> ".join(
                f"{hop.protocol}:{hop.pool_address}" + (f"@{hop.fee}" if hop.fee is not None else "")
                for hop in path.hops
            )
            rendered.append(f"[{path.amount_in}] {hops}")
        return " | ".join(rendered)


@dataclass(slots=True, frozen=True)
class Quote:
    route: Route
    from_asset: Asset
    to_asset: Asset
    amount_in: int
    expected_out: int
    source: str
    quoted_at: float
    block_number: int | None = None
    expected_out_gas_adjusted: int | None = None
    gas_estimate: int | None = None
    gas_price_wei: int | None = None
    gas_used_usd: str | None = None

    def age_seconds(self, *, now: float | None = None) -> float:
        current = now_epoch() if now is None else now
        return max(0.0, current - self.quoted_at)

    def is_stale(self, *, max_age_seconds: float, now: float | None = None) -> bool:
        return self.age_seconds(now=now) > max_age_seconds

    def summary(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "from": self.from_asset.symbol,
            "to": self.to_asset.symbol,
            "amount_in": self.amount_in,
            "expected_out": self.expected_out,
            "expected_out_gas_adjusted": self.expected_out_gas_adjusted,
            "gas_estimate": self.gas_estimate,
            "gas_price_wei": self.gas_price_wei,
            "gas_used_usd": self.gas_used_usd,
            "block_number": self.block_number,
            "path_count": len(self.route.paths),
            "route": self.route.describe(),
        }


@dataclass(slots=True, frozen=True)
class SwapCall:
    target: str
    calldata: str
    value: int
    minimum_out: int
    deadline: int


@dataclass(slots=True, frozen=True)
class SwapSubmission:
    tx_hash: str | None
    target: str
    minimum_out: int
    deadline: int
    nonce: int | None
    gas_params: dict[str, int]
    dry_run: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class LegOutcome:
    direction: TradeDirection
    status: LegStatus
    stage: str
    reason: str
    amount_in: int | None = None
    expected_out: int | None = None
    minimum_out: int | None = None
    tx_hash: str | None = None
    error_type: str | None = None
    retryable: bool | None = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RunReport:
    run_id: str
    started_at: str
    final_state: str = "idle"
    signal: PriceSignal | None = None
    balances: dict[str, int] = field(default_factory=dict)
    legs: list[LegOutcome] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None

    @property
    def exit_code(self) -> int:
        if any(leg.failed and leg.error_type == "ExecutionReverted" for leg in self.legs):
            return EXIT_OPERATOR_ATTENTION
        if self.error is not None or any(leg.failed for leg in self.legs):
            return EXIT_FAILURE
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "final_state": self.final_state,
            "signal": self.signal.to_dict() if self.signal else None,
            "balances": dict(self.balances),
            "legs": [leg.to_dict() for leg in self.legs],
            "error": self.error,
            "error_type": self.error_type,
            "exit_code": self.exit_code,
        }


class BalanceReader(Protocol):
    async def get_balance(self, *, owner: str, asset: Asset) -> int:
        ...


class PriceHistorySource(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def fetch_samples(self, lookback_days: int) -> list[PriceSample]:
        ...


class RouteQuoter(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def quote(self, *, from_asset: Asset, to_asset: Asset, amount: int) -> Quote:
        ...


class SwapExecutor(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def execute(
        self,
        *,
        quote: Quote,
        intent: TradeIntent,
        slippage_bps: int,
        deadline_seconds: int,
    ) -> SwapSubmission:
        ...
