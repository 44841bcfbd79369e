from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp
from web3 import AsyncWeb3
from eth_utils import is_address
from web3.exceptions import ContractLogicError, Web3Exception

from rebalancer.common import log_event

from .errors import NoRouteFound, QuoteUnavailable
from .types import (
    ZERO_ADDRESS,
    Asset,
    PoolHop,
    PoolProtocol,
    Quote,
    Route,
    RoutePath,
    now_epoch,
    to_int,
)

DEFAULT_ROUTING_API_URL = "https://api.uniswap.org/v1"
UNISWAP_V3_FACTORY_ADDRESS = "0x1F98431c8aD98523631AE4a59f267346ea31F984"

_POOL_TYPES: dict[str, PoolProtocol] = {"v2-pool": "v2", "v3-pool": "v3"}
MAX_V3_FEE = 0xFFFFFF

UNISWAP_V3_FACTORY_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
            {"name": "fee", "type": "uint24"},
        ],
        "name": "getPool",
        "outputs": [{"name": "pool", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]

UNISWAP_V3_POOL_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "observationIndex", "type": "uint16"},
            {"name": "observationCardinality", "type": "uint16"},
            {"name": "observationCardinalityNext", "type": "uint16"},
            {"name": "feeProtocol", "type": "uint8"},
            {"name": "unlocked", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "liquidity",
        "outputs": [{"name": "", "type": "uint128"}],
        "stateMutability": "view",
        "type": "function",
    },
]

QUOTER_V2_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "tokenIn", "type": "address"},
                    {"name": "tokenOut", "type": "address"},
                    {"name": "amountIn", "type": "uint256"},
                    {"name": "fee", "type": "uint24"},
                    {"name": "sqrtPriceLimitX96", "type": "uint160"},
                ],
                "name": "params",
                "type": "tuple",
            }
        ],
        "name": "quoteExactInputSingle",
        "outputs": [
            {"name": "amountOut", "type": "uint256"},
            {"name": "sqrtPriceX96After", "type": "uint160"},
            {"name": "initializedTicksCrossed", "type": "uint32"},
            {"name": "gasEstimate", "type": "uint256"},
        ],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


def _same_address(left: str, right: str) -> bool:
    return left.strip().lower() == right.strip().lower()


def _is_no_route_text(text: str) -> bool:
    lowered = text.lower()
    return "no_route" in lowered or "no route" in lowered or "no quotes available" in lowered


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("detail", "errorCode", "message", "error"):
            value = payload.get(key)
            if value:
                return str(value)
    return str(payload)


def _parse_hop(raw: Any, *, section: str) -> tuple[PoolHop, int, int]:
    if not isinstance(raw, dict):
        raise QuoteUnavailable(f"{section} is not an object: {raw!r}")

    protocol = _POOL_TYPES.get(str(raw.get("type") or "").strip().lower())
    if protocol is None:
        raise QuoteUnavailable(f"{section} uses unsupported pool type {raw.get('type')!r}")

    token_in = raw.get("tokenIn") if isinstance(raw.get("tokenIn"), dict) else {}
    token_out = raw.get("tokenOut") if isinstance(raw.get("tokenOut"), dict) else {}
    pool_address = str(raw.get("address") or "").strip()
    token_in_address = str(token_in.get("address") or "").strip()
    token_out_address = str(token_out.get("address") or "").strip()
    if not pool_address or not token_in_address or not token_out_address:
        raise QuoteUnavailable(f"{section} is missing pool or token addresses")
    for label, address in (("pool", pool_address), ("tokenIn", token_in_address), ("tokenOut", token_out_address)):
        if not is_address(address):
            raise QuoteUnavailable(f"{section} has an invalid {label} address: {address!r}")

    fee = to_int(raw.get("fee"), -1) if protocol == "v3" else None
    if protocol == "v3" and (fee is None or fee < 0):
        raise QuoteUnavailable(f"{section} is a v3 pool without a fee tier")
    if fee is not None and fee > MAX_V3_FEE:
        raise QuoteUnavailable(f"{section} fee tier {fee} does not fit in uint24")

    hop = PoolHop(
        pool_address=pool_address,
        protocol=protocol,
        token_in=token_in_address,
        token_out=token_out_address,
        fee=fee,
        liquidity=to_int(raw.get("liquidity"), 0) if protocol == "v3" else None,
        sqrt_price_x96=to_int(raw.get("sqrtRatioX96"), 0) if protocol == "v3" else None,
        tick=to_int(raw.get("tickCurrent"), 0) if protocol == "v3" else None,
    )
    return hop, to_int(raw.get("amountIn"), 0), to_int(raw.get("amountOut"), 0)


def parse_route_payload(raw_route: Any, *, from_asset: Asset, to_asset: Asset) -> Route:
    """Turn the aggregator's list-of-paths into a validated ``Route``."""
    if raw_route is None or raw_route == []:
        raise NoRouteFound(f"No route between {from_asset.symbol} and {to_asset.symbol}")
    if not isinstance(raw_route, list):
        raise QuoteUnavailable(f"Route payload is not a list: {raw_route!r}")

    paths: list[RoutePath] = []
    for path_index, raw_path in enumerate(raw_route):
        if not isinstance(raw_path, list) or not raw_path:
            raise QuoteUnavailable(f"route[{path_index}] is empty or malformed")

        hops: list[PoolHop] = []
        amount_in = 0
        expected_out = 0
        for hop_index, raw_hop in enumerate(raw_path):
            hop, hop_amount_in, hop_amount_out = _parse_hop(
                raw_hop,
                section=f"route[{path_index}][{hop_index}]",
            )
            if hop_index == 0:
                amount_in = hop_amount_in
            if hop_index == len(raw_path) - 1:
                expected_out = hop_amount_out
            hops.append(hop)

        if not _same_address(hops[0].token_in, from_asset.address):
            raise QuoteUnavailable(f"route[{path_index}] does not start at {from_asset.symbol}")
        if not _same_address(hops[-1].token_out, to_asset.address):
            raise QuoteUnavailable(f"route[{path_index}] does not end at {to_asset.symbol}")
        for previous, current in zip(hops, hops[1:]):
            if not _same_address(previous.token_out, current.token_in):
                raise QuoteUnavailable(f"route[{path_index}] is not a connected path")
        if amount_in <= 0 or expected_out <= 0:
            raise QuoteUnavailable(f"route[{path_index}] has no amountIn/amountOut")

        path = RoutePath(hops=tuple(hops), amount_in=amount_in, expected_out=expected_out)
        if path.protocol is None:
            raise QuoteUnavailable(f"route[{path_index}] mixes v2 and v3 pools")
        paths.append(path)

    return Route(paths=tuple(paths))


class AggregatedRouteQuoter:
    """Best composite route from an external route-optimizer service."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain_id: int,
        api_base_url: str = DEFAULT_ROUTING_API_URL,
        protocols: str = "v3",
        api_key: str = "",
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._chain_id = int(chain_id)
        self._api_base_url = api_base_url.rstrip("/")
        self._protocols = protocols.strip() or "v3"
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _endpoint(self) -> str:
        if self._api_base_url.endswith("/quote"):
            return self._api_base_url
        return f"{self._api_base_url}/quote"

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def quote(self, *, from_asset: Asset, to_asset: Asset, amount: int) -> Quote:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Routing API HTTP session is not initialized.")

        params = {
            "tokenInAddress": from_asset.address,
            "tokenInChainId": str(self._chain_id),
            "tokenOutAddress": to_asset.address,
            "tokenOutChainId": str(self._chain_id),
            "amount": str(int(amount)),
            "type": "exactIn",
            "protocols": self._protocols,
        }
        max_attempts = self._max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                async with self._session.get(
                    self._endpoint(),
                    params=params,
                    headers=self._build_headers(),
                ) as response:
                    status = response.status
                    body = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as error:
                last_error = error
                if attempt < max_attempts:
                    log_event(
                        self._logger,
                        level="warning",
                        event="routing_api_network_retry",
                        message="Routing API request failed; retrying",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=str(error),
                    )
                    await asyncio.sleep(self._retry_backoff_seconds * attempt)
                    continue
                raise QuoteUnavailable(f"Routing API request failed: {error}") from error

            data: Any = None
            try:
                data = json.loads(body) if body else {}
            except json.JSONDecodeError:
                data = None

            if status in {429, 500, 502, 503, 504} and attempt < max_attempts:
                log_event(
                    self._logger,
                    level="warning",
                    event="routing_api_retry",
                    message="Routing API returned retryable status",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    status=status,
                )
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue

            if status >= 400:
                detail = _error_message_from_payload(data) if data is not None else body[:240]
                if status == 404 or _is_no_route_text(detail) or _is_no_route_text(body):
                    raise NoRouteFound(
                        f"No route between {from_asset.symbol} and {to_asset.symbol}: {detail}",
                        details={"status": status},
                    )
                raise QuoteUnavailable(
                    f"Routing API request failed: status={status} error={detail}",
                    details={"status": status},
                )

            if not isinstance(data, dict):
                raise QuoteUnavailable(f"Routing API returned non-JSON body: {body[:240]!r}")

            return self._build_quote(data, from_asset=from_asset, to_asset=to_asset, amount=amount)

        raise QuoteUnavailable(f"Routing API request exhausted retries: {last_error}")

    def _build_quote(
        self,
        data: dict[str, Any],
        *,
        from_asset: Asset,
        to_asset: Asset,
        amount: int,
    ) -> Quote:
        if data.get("errorCode"):
            message = _error_message_from_payload(data)
            if _is_no_route_text(message) or _is_no_route_text(str(data.get("errorCode"))):
                raise NoRouteFound(f"No route between {from_asset.symbol} and {to_asset.symbol}: {message}")
            raise QuoteUnavailable(f"Routing API error: {message}")

        route = parse_route_payload(data.get("route"), from_asset=from_asset, to_asset=to_asset)
        routed_amount = sum(path.amount_in for path in route.paths)
        if routed_amount != int(amount):
            raise QuoteUnavailable(
                f"Route splits cover {routed_amount} base units but {amount} were requested",
            )

        expected_out = to_int(data.get("quote"), 0)
        if expected_out <= 0:
            raise NoRouteFound(f"Routing API quoted zero output for {from_asset.symbol}->{to_asset.symbol}")

        gas_adjusted = to_int(data.get("quoteGasAdjusted"), 0)
        gas_estimate = to_int(data.get("gasUseEstimate"), 0)
        gas_price_wei = to_int(data.get("gasPriceWei"), 0)
        block_number = to_int(data.get("blockNumber"), 0)
        gas_used_usd = data.get("gasUseEstimateUSD")

        quote = Quote(
            route=route,
            from_asset=from_asset,
            to_asset=to_asset,
            amount_in=int(amount),
            expected_out=expected_out,
            source="aggregated",
            quoted_at=now_epoch(),
            block_number=block_number or None,
            expected_out_gas_adjusted=gas_adjusted or None,
            gas_estimate=gas_estimate or None,
            gas_price_wei=gas_price_wei or None,
            gas_used_usd=str(gas_used_usd) if gas_used_usd is not None else None,
        )
        log_event(
            self._logger,
            level="info",
            event="route_quoted",
            message="Aggregated route quoted",
            **quote.summary(),
        )
        return quote


class DirectPoolQuoter:
    """Single-hop route through one Uniswap V3 pool, quoted by the on-chain quoter."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        web3: AsyncWeb3,
        quoter_address: str,
        factory_address: str = UNISWAP_V3_FACTORY_ADDRESS,
        fee_tier: int = 500,
    ) -> None:
        self._logger = logger
        self._web3 = web3
        self._quoter_address = AsyncWeb3.to_checksum_address(quoter_address)
        self._factory_address = AsyncWeb3.to_checksum_address(factory_address)
        self._fee_tier = int(fee_tier)

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def _read(self, call: Any, *, what: str) -> Any:
        try:
            return await call.call()
        except asyncio.CancelledError:
            raise
        except ContractLogicError as error:
            raise QuoteUnavailable(f"{what} reverted: {error}") from error
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception, ValueError) as error:
            raise QuoteUnavailable(f"{what} failed: {error}") from error

    async def _resolve_pool(self, *, from_asset: Asset, to_asset: Asset) -> str:
        factory = self._web3.eth.contract(address=self._factory_address, abi=UNISWAP_V3_FACTORY_ABI)
        pool_address = await self._read(
            factory.functions.getPool(
                AsyncWeb3.to_checksum_address(from_asset.address),
                AsyncWeb3.to_checksum_address(to_asset.address),
                self._fee_tier,
            ),
            what="getPool",
        )
        pool_address = str(pool_address or "")
        if not pool_address or _same_address(pool_address, ZERO_ADDRESS):
            raise NoRouteFound(
                f"No {self._fee_tier} fee-tier pool for {from_asset.symbol}/{to_asset.symbol}",
                details={"fee_tier": self._fee_tier},
            )
        return pool_address

    async def quote(self, *, from_asset: Asset, to_asset: Asset, amount: int) -> Quote:
        pool_address = await self._resolve_pool(from_asset=from_asset, to_asset=to_asset)
        pool = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(pool_address),
            abi=UNISWAP_V3_POOL_ABI,
        )
        slot0, liquidity = await asyncio.gather(
            self._read(pool.functions.slot0(), what="slot0"),
            self._read(pool.functions.liquidity(), what="liquidity"),
        )
        if not isinstance(slot0, (list, tuple)) or len(slot0) < 2:
            raise QuoteUnavailable(f"slot0 returned malformed data: {slot0!r}")
        if int(liquidity) <= 0:
            raise NoRouteFound(f"Pool {pool_address} has no active liquidity")

        quoter = self._web3.eth.contract(address=self._quoter_address, abi=QUOTER_V2_ABI)
        result = await self._read(
            quoter.functions.quoteExactInputSingle(
                (
                    AsyncWeb3.to_checksum_address(from_asset.address),
                    AsyncWeb3.to_checksum_address(to_asset.address),
                    int(amount),
                    self._fee_tier,
                    0,
                )
            ),
            what="quoteExactInputSingle",
        )
        if not isinstance(result, (list, tuple)) or not result:
            raise QuoteUnavailable(f"quoteExactInputSingle returned malformed data: {result!r}")
        expected_out = int(result[0])
        if expected_out <= 0:
            raise NoRouteFound(f"Pool {pool_address} quoted zero output")
        gas_estimate = int(result[3]) if len(result) > 3 else None

        try:
            block_number = int(await self._web3.eth.get_block_number())
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception) as error:
            raise QuoteUnavailable(f"eth_blockNumber failed: {error}") from error

        hop = PoolHop(
            pool_address=pool_address,
            protocol="v3",
            token_in=from_asset.address,
            token_out=to_asset.address,
            fee=self._fee_tier,
            liquidity=int(liquidity),
            sqrt_price_x96=int(slot0[0]),
            tick=int(slot0[1]),
        )
        quote = Quote(
            route=Route(paths=(RoutePath(hops=(hop,), amount_in=int(amount), expected_out=expected_out),)),
            from_asset=from_asset,
            to_asset=to_asset,
            amount_in=int(amount),
            expected_out=expected_out,
            source="direct",
            quoted_at=now_epoch(),
            block_number=block_number,
            gas_estimate=gas_estimate,
        )
        log_event(
            self._logger,
            level="info",
            event="route_quoted",
            message="Single-pool route quoted",
            **quote.summary(),
        )
        return quote
