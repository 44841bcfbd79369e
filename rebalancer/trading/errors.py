from __future__ import annotations


class RebalancerError(RuntimeError):
    """Base class for failures of a rebalancing cycle."""

    retryable: bool = False

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})


class ConfigurationError(RebalancerError):
    pass


class DataUnavailable(RebalancerError):
    retryable = True


class InvalidAmount(RebalancerError):
    pass


class NoRouteFound(RebalancerError):
    retryable = True


class QuoteUnavailable(RebalancerError):
    retryable = True


class SubmissionFailed(RebalancerError):
    """Transport or RPC failure before the swap was broadcast."""

    retryable = True


class ExecutionReverted(RebalancerError):
    """The exchange contract rejected the swap. Never retried automatically."""

    retryable = False
