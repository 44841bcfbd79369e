from .balances import Erc20BalanceReader
from .engine import CycleConfig, DecisionOrchestrator, RunStateMachine
from .errors import (
    ConfigurationError,
    DataUnavailable,
    ExecutionReverted,
    InvalidAmount,
    NoRouteFound,
    QuoteUnavailable,
    RebalancerError,
    SubmissionFailed,
)
from .executors import DryRunSwapExecutor, LiveSwapExecutor
from .pricing import BitstampPriceSource, compute_signal
from .quoters import AggregatedRouteQuoter, DirectPoolQuoter
from .sizing import size_trade
from .types import Asset, Quote, RunReport, TradeIntent

__all__ = [
    "AggregatedRouteQuoter",
    "Asset",
    "BitstampPriceSource",
    "ConfigurationError",
    "CycleConfig",
    "DataUnavailable",
    "DecisionOrchestrator",
    "DirectPoolQuoter",
    "DryRunSwapExecutor",
    "Erc20BalanceReader",
    "ExecutionReverted",
    "InvalidAmount",
    "LiveSwapExecutor",
    "NoRouteFound",
    "Quote",
    "QuoteUnavailable",
    "RebalancerError",
    "RunReport",
    "RunStateMachine",
    "SubmissionFailed",
    "TradeIntent",
    "compute_signal",
    "size_trade",
]
