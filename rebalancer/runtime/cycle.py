from __future__ import annotations

import logging

import aiohttp
from web3 import AsyncWeb3

from rebalancer.common import close_all, guarded_call, log_event
from rebalancer.storage import RunJournal, StorageSettings
from rebalancer.trading import (
    AggregatedRouteQuoter,
    BitstampPriceSource,
    CycleConfig,
    DecisionOrchestrator,
    DirectPoolQuoter,
    DryRunSwapExecutor,
    Erc20BalanceReader,
    LiveSwapExecutor,
    RebalancerError,
)
from rebalancer.trading.types import EXIT_FAILURE, RouteQuoter, SwapExecutor

from .settings import AppSettings


def build_web3(settings: AppSettings) -> AsyncWeb3:
    provider = AsyncWeb3.AsyncHTTPProvider(
        settings.rpc_url,
        request_kwargs={"timeout": aiohttp.ClientTimeout(total=settings.http_timeout_seconds)},
    )
    return AsyncWeb3(provider)


def build_route_quoter(settings: AppSettings, *, logger: logging.Logger, web3: AsyncWeb3) -> RouteQuoter:
    if settings.routing_strategy == "direct":
        return DirectPoolQuoter(
            logger=logger,
            web3=web3,
            quoter_address=settings.quoter_address,
            factory_address=settings.factory_address,
            fee_tier=settings.pool_fee_tier,
        )
    return AggregatedRouteQuoter(
        logger=logger,
        chain_id=settings.chain_id,
        api_base_url=settings.routing_api_url,
        protocols=settings.routing_protocols,
        api_key=settings.routing_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )


def build_executor(settings: AppSettings, *, logger: logging.Logger, web3: AsyncWeb3) -> SwapExecutor:
    if settings.dry_run:
        return DryRunSwapExecutor(
            logger=logger,
            router_address=settings.router_address,
            wallet_address=settings.wallet_address,
            max_quote_age_seconds=settings.quote_max_age_seconds,
        )
    return LiveSwapExecutor(
        logger=logger,
        web3=web3,
        private_key=settings.private_key,
        router_address=settings.router_address,
        chain_id=settings.chain_id,
        max_quote_age_seconds=settings.quote_max_age_seconds,
        gas_limit_buffer_pct=settings.gas_limit_buffer_pct,
        gas_limit_cap=settings.gas_limit_cap,
    )


def build_cycle_config(settings: AppSettings) -> CycleConfig:
    return CycleConfig(
        base_asset=settings.base_asset,
        quote_asset=settings.quote_asset,
        wallet_address=settings.wallet_address,
        max_trade_notional=settings.max_trade_notional,
        lookback_days=settings.lookback_days,
        slippage_bps=settings.slippage_bps,
        deadline_seconds=settings.deadline_seconds,
    )


async def run_cycle(
    *,
    logger: logging.Logger,
    settings: AppSettings,
    storage_settings: StorageSettings,
) -> int:
    """Run one decision cycle and return the process exit code."""
    web3 = build_web3(settings)
    price_source = BitstampPriceSource(
        logger=logger,
        api_base_url=settings.price_api_url,
        pair=settings.price_pair,
        max_samples=settings.price_max_samples,
        timeout_seconds=settings.http_timeout_seconds,
    )
    quoter = build_route_quoter(settings, logger=logger, web3=web3)
    executor = build_executor(settings, logger=logger, web3=web3)
    journal = RunJournal(storage_settings, logger)

    log_event(
        logger,
        level="info",
        event="run_started",
        message="Rebalance run started",
        **settings.redacted(),
    )

    try:
        await price_source.connect()
        await quoter.connect()
        await executor.connect()
        await guarded_call(
            journal.connect,
            logger=logger,
            event="run_journal_connect_failed",
            message="Run journal unavailable; continuing without it",
        )

        orchestrator = DecisionOrchestrator(
            logger=logger,
            config=build_cycle_config(settings),
            balance_reader=Erc20BalanceReader(logger=logger, web3=web3),
            price_source=price_source,
            quoter=quoter,
            executor=executor,
        )
        report = await orchestrator.run()
        await journal.record_run(report.to_dict())
        return report.exit_code
    except RebalancerError as error:
        log_event(
            logger,
            level="error",
            event="run_failed",
            message="Rebalance run failed",
            error_type=type(error).__name__,
            error=str(error),
            details=error.details,
        )
        return EXIT_FAILURE
    except Exception as error:
        log_event(
            logger,
            level="exception",
            event="run_crashed",
            message="Rebalance run crashed",
            error=str(error),
        )
        return EXIT_FAILURE
    finally:
        await close_all(
            (
                ("swap executor", executor.close),
                ("route quoter", quoter.close),
                ("price source", price_source.close),
                ("run journal", journal.close),
                ("web3 provider", web3.provider.disconnect),
            ),
            logger=logger,
        )
