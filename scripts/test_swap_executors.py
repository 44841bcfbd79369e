from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from eth_account import Account
from web3.exceptions import ContractLogicError, Web3RPCError

from rebalancer.trading.errors import ExecutionReverted, QuoteUnavailable, SubmissionFailed
from rebalancer.trading.executors import DryRunSwapExecutor, LiveSwapExecutor
from rebalancer.trading.types import USDC_ADDRESS, WETH_ADDRESS, Asset, PoolHop, Quote, Route, RoutePath, TradeIntent

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_ADDRESS = Account.from_key(TEST_PRIVATE_KEY).address
ROUTER = "0x68b3465833fb72A70ecDF485E0e4C7bD8665Fc45"
POOL = "0x45dDa9cb7c25131DF268515131f647d726f50608"
QUOTED_AT = 1_700_000_000.0

WETH = Asset(symbol="WETH", address=WETH_ADDRESS, decimals=18)
USDC = Asset(symbol="USDC", address=USDC_ADDRESS, decimals=6)


async def _resolved(value: Any) -> Any:
    return value


class _FakeEth:
    def __init__(self) -> None:
        self.get_transaction_count = AsyncMock(return_value=7)
        self.get_block = AsyncMock(return_value={"baseFeePerGas": 100})
        self.estimate_gas = AsyncMock(return_value=200_000)
        self.send_raw_transaction = AsyncMock(return_value=b"\x01" * 32)
        self.allowance_call = MagicMock()
        self.allowance_call.call = AsyncMock(return_value=2**256 - 1)
        self.contract = MagicMock()
        self.contract.return_value.functions.allowance.return_value = self.allowance_call

    @property
    def max_priority_fee(self) -> Any:
        return _resolved(30)

    @property
    def gas_price(self) -> Any:
        return _resolved(55)


class _FakeWeb3:
    def __init__(self) -> None:
        self.eth = _FakeEth()


def _quote(*, gas_price_wei: int | None = 35_000_000_000, quoted_at: float = QUOTED_AT) -> Quote:
    hop = PoolHop(pool_address=POOL, protocol="v3", token_in=WETH_ADDRESS, token_out=USDC_ADDRESS, fee=500)
    return Quote(
        route=Route(paths=(RoutePath(hops=(hop,), amount_in=10**18, expected_out=1_500_000_000),)),
        from_asset=WETH,
        to_asset=USDC,
        amount_in=10**18,
        expected_out=1_500_000_000,
        source="aggregated",
        quoted_at=quoted_at,
        gas_price_wei=gas_price_wei,
    )


def _intent(amount: int = 10**18) -> TradeIntent:
    return TradeIntent(direction="base_to_quote", from_asset=WETH, to_asset=USDC, amount=amount)


class DryRunSwapExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def test_dry_run_builds_bounds_without_hash(self) -> None:
        executor = DryRunSwapExecutor(
            logger=logging.getLogger("test.dry_run"),
            router_address=ROUTER,
            wallet_address=TEST_ADDRESS,
            clock=lambda: QUOTED_AT + 2,
        )

        submission = await executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=300)

        self.assertTrue(submission.dry_run)
        self.assertIsNone(submission.tx_hash)
        self.assertEqual(submission.minimum_out, 1_492_500_000)
        self.assertEqual(submission.deadline, int(QUOTED_AT) + 2 + 300)

    async def test_quote_for_other_amount_is_refused(self) -> None:
        executor = DryRunSwapExecutor(
            logger=logging.getLogger("test.dry_run"),
            router_address=ROUTER,
            wallet_address=TEST_ADDRESS,
            clock=lambda: QUOTED_AT,
        )
        with self.assertRaises(QuoteUnavailable):
            await executor.execute(quote=_quote(), intent=_intent(5), slippage_bps=50, deadline_seconds=300)


class LiveSwapExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.web3 = _FakeWeb3()
        self.executor = LiveSwapExecutor(
            logger=logging.getLogger("test.live"),
            web3=self.web3,  # type: ignore[arg-type]
            private_key=TEST_PRIVATE_KEY,
            router_address=ROUTER,
            chain_id=137,
            max_quote_age_seconds=30,
            gas_limit_buffer_pct=20,
            gas_limit_cap=1_500_000,
            clock=lambda: QUOTED_AT + 1,
        )

    async def test_broadcasts_once_with_route_gas_price(self) -> None:
        submission = await self.executor.execute(
            quote=_quote(),
            intent=_intent(),
            slippage_bps=50,
            deadline_seconds=120,
        )

        self.assertFalse(submission.dry_run)
        self.assertTrue(submission.tx_hash and submission.tx_hash.startswith("0x"))
        self.assertEqual(len(submission.tx_hash or ""), 66)
        self.assertEqual(submission.nonce, 7)
        self.assertEqual(submission.gas_params, {"gas": 240_000, "gasPrice": 35_000_000_000})
        self.assertEqual(submission.deadline, int(QUOTED_AT) + 1 + 120)
        self.web3.eth.send_raw_transaction.assert_awaited_once()
        self.web3.eth.get_transaction_count.assert_awaited_once_with(TEST_ADDRESS, "pending")
        estimated = self.web3.eth.estimate_gas.await_args.args[0]
        self.assertEqual(estimated["from"], TEST_ADDRESS)
        self.assertEqual(estimated["chainId"], 137)

    async def test_eip1559_fees_when_route_has_no_gas_price(self) -> None:
        submission = await self.executor.execute(
            quote=_quote(gas_price_wei=None),
            intent=_intent(),
            slippage_bps=50,
            deadline_seconds=120,
        )
        self.assertEqual(submission.gas_params["maxPriorityFeePerGas"], 30)
        self.assertEqual(submission.gas_params["maxFeePerGas"], 230)

    async def test_gas_limit_is_capped(self) -> None:
        self.web3.eth.estimate_gas = AsyncMock(return_value=1_400_000)
        submission = await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)
        self.assertEqual(submission.gas_params["gas"], 1_500_000)

    async def test_revert_during_estimation_is_execution_reverted(self) -> None:
        self.web3.eth.estimate_gas = AsyncMock(side_effect=ContractLogicError("execution reverted: Too little received"))

        with self.assertRaises(ExecutionReverted) as ctx:
            await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)

        self.assertFalse(ctx.exception.retryable)
        self.web3.eth.send_raw_transaction.assert_not_awaited()

    async def test_rpc_error_before_broadcast_is_submission_failed(self) -> None:
        self.web3.eth.get_transaction_count = AsyncMock(side_effect=Web3RPCError("upstream unavailable"))

        with self.assertRaises(SubmissionFailed) as ctx:
            await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)

        self.assertTrue(ctx.exception.retryable)
        self.web3.eth.send_raw_transaction.assert_not_awaited()

    async def test_broadcast_timeout_reports_hash(self) -> None:
        self.web3.eth.send_raw_transaction = AsyncMock(side_effect=asyncio.TimeoutError())

        with self.assertRaises(SubmissionFailed) as ctx:
            await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)

        self.assertTrue(ctx.exception.details["possibly_broadcast"])
        self.assertTrue(str(ctx.exception.details["tx_hash"]).startswith("0x"))
        self.web3.eth.send_raw_transaction.assert_awaited_once()

    async def test_stale_quote_is_refused_before_signing(self) -> None:
        with self.assertRaises(QuoteUnavailable):
            await self.executor.execute(
                quote=_quote(quoted_at=QUOTED_AT - 120),
                intent=_intent(),
                slippage_bps=50,
                deadline_seconds=60,
            )
        self.web3.eth.estimate_gas.assert_not_awaited()

    async def test_signing_failure_is_submission_failed_without_broadcast(self) -> None:
        with patch.object(self.executor._account, "sign_transaction", side_effect=TypeError("maxFeePerGas must be an int")):
            with self.assertRaises(SubmissionFailed) as ctx:
                await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)

        self.assertEqual(ctx.exception.details["stage"], "sign")
        self.assertFalse(ctx.exception.details["possibly_broadcast"])
        self.web3.eth.send_raw_transaction.assert_not_awaited()

    async def test_missing_router_allowance_needs_operator_attention(self) -> None:
        self.web3.eth.allowance_call.call = AsyncMock(return_value=10**17)

        with self.assertRaises(ExecutionReverted) as ctx:
            await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)

        self.assertEqual(ctx.exception.details["stage"], "allowance")
        self.web3.eth.contract.return_value.functions.allowance.assert_called_once_with(TEST_ADDRESS, ROUTER)
        self.web3.eth.estimate_gas.assert_not_awaited()
        self.web3.eth.send_raw_transaction.assert_not_awaited()

    async def test_allowance_read_failure_is_submission_failed(self) -> None:
        self.web3.eth.allowance_call.call = AsyncMock(side_effect=Web3RPCError("upstream unavailable"))

        with self.assertRaises(SubmissionFailed):
            await self.executor.execute(quote=_quote(), intent=_intent(), slippage_bps=50, deadline_seconds=60)

        self.web3.eth.send_raw_transaction.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
