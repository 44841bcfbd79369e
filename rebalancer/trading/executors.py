from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import aiohttp
from eth_account import Account
from eth_utils.exceptions import ValidationError
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, Web3Exception, Web3RPCError

from rebalancer.common import log_event

from .encoding import build_swap_call
from .errors import ExecutionReverted, QuoteUnavailable, SubmissionFailed
from .types import Quote, SwapCall, SwapSubmission, TradeIntent, now_epoch


ERC20_ALLOWANCE_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def _same_address(left: str, right: str) -> bool:
    return left.strip().lower() == right.strip().lower()


def _looks_like_revert(error: Exception) -> bool:
    return "revert" in str(error).lower()


def prepare_swap_call(
    *,
    quote: Quote,
    intent: TradeIntent,
    router_address: str,
    recipient: str,
    slippage_bps: int,
    deadline_seconds: int,
    max_quote_age_seconds: float,
    now: float,
) -> SwapCall:
    """Validate the quote against the intent and build the bounded router call."""
    if (
        not _same_address(quote.from_asset.address, intent.from_asset.address)
        or not _same_address(quote.to_asset.address, intent.to_asset.address)
        or quote.amount_in != intent.amount
    ):
        raise QuoteUnavailable(
            "Quote does not match the trade intent",
            details={"quote_amount_in": quote.amount_in, "intent_amount": intent.amount},
        )
    if quote.is_stale(max_age_seconds=max_quote_age_seconds, now=now):
        raise QuoteUnavailable(
            f"Quote is {quote.age_seconds(now=now):.1f}s old; refusing to submit",
            details={"max_age_seconds": max_quote_age_seconds},
        )
    if deadline_seconds <= 0:
        raise QuoteUnavailable(f"Deadline window must be positive, got {deadline_seconds}s")

    return build_swap_call(
        quote=quote,
        router_address=router_address,
        recipient=recipient,
        slippage_bps=slippage_bps,
        deadline=int(now) + int(deadline_seconds),
    )


class DryRunSwapExecutor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        router_address: str,
        wallet_address: str,
        max_quote_age_seconds: float = 30.0,
        clock: Callable[[], float] = now_epoch,
    ) -> None:
        self._logger = logger
        self._router_address = router_address
        self._wallet_address = wallet_address
        self._max_quote_age_seconds = max_quote_age_seconds
        self._clock = clock

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def execute(
        self,
        *,
        quote: Quote,
        intent: TradeIntent,
        slippage_bps: int,
        deadline_seconds: int,
    ) -> SwapSubmission:
        swap_call = prepare_swap_call(
            quote=quote,
            intent=intent,
            router_address=self._router_address,
            recipient=self._wallet_address,
            slippage_bps=slippage_bps,
            deadline_seconds=deadline_seconds,
            max_quote_age_seconds=self._max_quote_age_seconds,
            now=self._clock(),
        )
        submission = SwapSubmission(
            tx_hash=None,
            target=swap_call.target,
            minimum_out=swap_call.minimum_out,
            deadline=swap_call.deadline,
            nonce=None,
            gas_params={},
            dry_run=True,
        )
        log_event(
            self._logger,
            level="info",
            event="swap_dry_run",
            message="Dry run: swap built but not signed or broadcast",
            direction=intent.direction,
            amount_in=intent.amount,
            expected_out=quote.expected_out,
            minimum_out=swap_call.minimum_out,
            deadline=swap_call.deadline,
            calldata_bytes=(len(swap_call.calldata) - 2) // 2,
        )
        return submission


class LiveSwapExecutor:
    """Signs the router call locally and broadcasts it exactly once."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        web3: AsyncWeb3,
        private_key: str,
        router_address: str,
        chain_id: int,
        max_quote_age_seconds: float = 30.0,
        gas_limit_buffer_pct: int = 20,
        gas_limit_cap: int = 1_500_000,
        clock: Callable[[], float] = now_epoch,
    ) -> None:
        self._logger = logger
        self._web3 = web3
        self._account = Account.from_key(private_key)
        self._router_address = router_address
        self._chain_id = int(chain_id)
        self._max_quote_age_seconds = max_quote_age_seconds
        self._gas_limit_buffer_pct = max(0, int(gas_limit_buffer_pct))
        self._gas_limit_cap = max(21_000, int(gas_limit_cap))
        self._clock = clock

    @property
    def address(self) -> str:
        return self._account.address

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def _resolve_fees(self, quote: Quote) -> dict[str, int]:
        if quote.gas_price_wei:
            return {"gasPrice": int(quote.gas_price_wei)}

        block = await self._web3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas") if block else None
        if base_fee is None:
            return {"gasPrice": int(await self._web3.eth.gas_price)}

        priority_fee = int(await self._web3.eth.max_priority_fee)
        return {
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": 2 * int(base_fee) + priority_fee,
        }

    def _apply_gas_buffer(self, estimate: int) -> int:
        buffered = estimate * (100 + self._gas_limit_buffer_pct) // 100
        return min(self._gas_limit_cap, buffered)

    async def _check_allowance(self, *, quote: Quote, swap_call: SwapCall) -> None:
        """The router pulls the input token, so it must already be approved for the full amount."""
        token = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(quote.from_asset.address),
            abi=ERC20_ALLOWANCE_ABI,
        )
        try:
            allowance = int(await token.functions.allowance(self._account.address, swap_call.target).call())
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception, TypeError, ValueError) as error:
            raise SubmissionFailed(f"allowance({quote.from_asset.symbol}) read failed: {error}") from error

        if allowance < quote.amount_in:
            raise ExecutionReverted(
                f"Router allowance for {quote.from_asset.symbol} is {allowance}, below {quote.amount_in}; "
                "approve the router before trading",
                details={"stage": "allowance", "asset": quote.from_asset.symbol, "allowance": allowance},
            )

    async def _build_transaction(self, *, quote: Quote, swap_call: SwapCall) -> dict[str, Any]:
        try:
            nonce = int(await self._web3.eth.get_transaction_count(self._account.address, "pending"))
            fees = await self._resolve_fees(quote)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception, ValueError) as error:
            raise SubmissionFailed(f"Could not prepare transaction: {error}") from error

        transaction: dict[str, Any] = {
            "chainId": self._chain_id,
            "from": self._account.address,
            "to": swap_call.target,
            "data": swap_call.calldata,
            "value": swap_call.value,
            "nonce": nonce,
            **fees,
        }

        try:
            estimate = int(await self._web3.eth.estimate_gas(transaction))
        except asyncio.CancelledError:
            raise
        except ContractLogicError as error:
            raise ExecutionReverted(
                f"Swap would revert: {error}",
                details={"stage": "estimate_gas", "minimum_out": swap_call.minimum_out},
            ) from error
        except Web3RPCError as error:
            if _looks_like_revert(error):
                raise ExecutionReverted(
                    f"Swap would revert: {error}",
                    details={"stage": "estimate_gas", "minimum_out": swap_call.minimum_out},
                ) from error
            raise SubmissionFailed(f"Gas estimation failed: {error}") from error
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception, ValueError) as error:
            raise SubmissionFailed(f"Gas estimation failed: {error}") from error

        transaction["gas"] = self._apply_gas_buffer(estimate)
        return transaction

    async def execute(
        self,
        *,
        quote: Quote,
        intent: TradeIntent,
        slippage_bps: int,
        deadline_seconds: int,
    ) -> SwapSubmission:
        swap_call = prepare_swap_call(
            quote=quote,
            intent=intent,
            router_address=self._router_address,
            recipient=self._account.address,
            slippage_bps=slippage_bps,
            deadline_seconds=deadline_seconds,
            max_quote_age_seconds=self._max_quote_age_seconds,
            now=self._clock(),
        )
        await self._check_allowance(quote=quote, swap_call=swap_call)
        transaction = await self._build_transaction(quote=quote, swap_call=swap_call)
        unsigned = {key: value for key, value in transaction.items() if key != "from"}
        try:
            signed = self._account.sign_transaction(unsigned)
        except (TypeError, ValueError, ValidationError) as error:
            raise SubmissionFailed(
                f"Transaction could not be signed: {error}",
                details={"stage": "sign", "possibly_broadcast": False},
            ) from error
        tx_hash = Web3.to_hex(signed.hash)
        gas_params = {
            key: int(transaction[key])
            for key in ("gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas")
            if key in transaction
        }

        try:
            await self._web3.eth.send_raw_transaction(signed.raw_transaction)
        except asyncio.CancelledError:
            raise
        except ContractLogicError as error:
            raise ExecutionReverted(
                f"Swap reverted on submission: {error}",
                details={"stage": "send", "tx_hash": tx_hash},
            ) from error
        except asyncio.TimeoutError as error:
            # The node may still have accepted it; the hash is reported for reconciliation.
            raise SubmissionFailed(
                f"Broadcast timed out: {error}",
                details={"tx_hash": tx_hash, "possibly_broadcast": True},
            ) from error
        except (aiohttp.ClientError, Web3Exception, ValueError) as error:
            if _looks_like_revert(error):
                raise ExecutionReverted(
                    f"Swap reverted on submission: {error}",
                    details={"stage": "send", "tx_hash": tx_hash},
                ) from error
            raise SubmissionFailed(
                f"Broadcast failed: {error}",
                details={"tx_hash": tx_hash, "possibly_broadcast": isinstance(error, aiohttp.ClientError)},
            ) from error

        submission = SwapSubmission(
            tx_hash=tx_hash,
            target=swap_call.target,
            minimum_out=swap_call.minimum_out,
            deadline=swap_call.deadline,
            nonce=int(transaction["nonce"]),
            gas_params=gas_params,
            dry_run=False,
        )
        log_event(
            self._logger,
            level="info",
            event="swap_submitted",
            message="Swap transaction broadcast",
            direction=intent.direction,
            amount_in=intent.amount,
            expected_out=quote.expected_out,
            **submission.to_dict(),
        )
        return submission
