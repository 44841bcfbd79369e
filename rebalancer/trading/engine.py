from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from rebalancer.common import log_event

from .errors import DataUnavailable, InvalidAmount, RebalancerError
from .pricing import compute_signal
from .sizing import size_trade
from .types import (
    Asset,
    BalanceReader,
    LegOutcome,
    PriceHistorySource,
    PriceSignal,
    RouteQuoter,
    RunReport,
    SwapExecutor,
    TradeDirection,
    TradeIntent,
    now_iso,
)

RUN_STATES = (
    "idle",
    "reading_balances",
    "computing_signal",
    "deciding",
    "sizing",
    "quoting",
    "executing",
    "done",
    "aborted",
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "idle": frozenset({"reading_balances"}),
    "reading_balances": frozenset({"computing_signal", "aborted"}),
    "computing_signal": frozenset({"deciding", "aborted"}),
    "deciding": frozenset({"sizing", "done", "aborted"}),
    "sizing": frozenset({"quoting", "deciding"}),
    "quoting": frozenset({"executing", "deciding", "aborted"}),
    "executing": frozenset({"deciding", "aborted"}),
    "done": frozenset(),
    "aborted": frozenset(),
}


class RunStateMachine:
    def __init__(self, *, logger: logging.Logger, run_id: str) -> None:
        self._logger = logger
        self._run_id = run_id
        self.state = "idle"
        self.history: list[str] = ["idle"]

    @property
    def finished(self) -> bool:
        return self.state in {"done", "aborted"}

    def transition(self, target: str, **fields: object) -> None:
        if target not in ALLOWED_TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Illegal run state transition {self.state} -> {target}")
        previous = self.state
        self.state = target
        self.history.append(target)
        log_event(
            self._logger,
            level="debug",
            event="run_state_changed",
            message="Run state changed",
            run_id=self._run_id,
            previous=previous,
            state=target,
            **fields,
        )


@dataclass(slots=True, frozen=True)
class CycleConfig:
    base_asset: Asset
    quote_asset: Asset
    wallet_address: str
    max_trade_notional: Decimal
    lookback_days: int
    slippage_bps: int
    deadline_seconds: int


def triggered_directions(
    *,
    signal: PriceSignal,
    base_balance: int,
    quote_balance: int,
) -> dict[TradeDirection, str | None]:
    """Each direction mapped to ``None`` when it fires, otherwise to why it does not."""
    decisions: dict[TradeDirection, str | None] = {}

    if signal.latest >= signal.average:
        decisions["base_to_quote"] = "latest price is not below the moving average"
    elif base_balance <= 0:
        decisions["base_to_quote"] = "no base balance to sell"
    else:
        decisions["base_to_quote"] = None

    if signal.latest <= signal.average:
        decisions["quote_to_base"] = "latest price is not above the moving average"
    elif quote_balance <= 0:
        decisions["quote_to_base"] = "no quote balance to sell"
    else:
        decisions["quote_to_base"] = None

    return decisions


class DecisionOrchestrator:
    """One decision cycle: read, decide, then size/quote/execute each triggered leg."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        config: CycleConfig,
        balance_reader: BalanceReader,
        price_source: PriceHistorySource,
        quoter: RouteQuoter,
        executor: SwapExecutor,
        run_id: str | None = None,
    ) -> None:
        self._logger = logger
        self._config = config
        self._balance_reader = balance_reader
        self._price_source = price_source
        self._quoter = quoter
        self._executor = executor
        self._run_id = run_id or uuid.uuid4().hex[:16]

    def _assets(self, direction: TradeDirection) -> tuple[Asset, Asset]:
        if direction == "base_to_quote":
            return self._config.base_asset, self._config.quote_asset
        return self._config.quote_asset, self._config.base_asset

    async def _read_inputs(self) -> tuple[int, int, list]:
        results = await asyncio.gather(
            self._balance_reader.get_balance(owner=self._config.wallet_address, asset=self._config.base_asset),
            self._balance_reader.get_balance(owner=self._config.wallet_address, asset=self._config.quote_asset),
            self._price_source.fetch_samples(self._config.lookback_days),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        base_balance, quote_balance, samples = results
        return int(base_balance), int(quote_balance), list(samples)

    def _abort(self, machine: RunStateMachine, report: RunReport, error: RebalancerError, *, stage: str) -> RunReport:
        report.error = str(error)
        report.error_type = type(error).__name__
        machine.transition("aborted", reason=report.error_type)
        report.final_state = machine.state
        log_event(
            self._logger,
            level="error",
            event="run_aborted",
            message="Run aborted before any trade",
            run_id=self._run_id,
            stage=stage,
            error_type=report.error_type,
            error=report.error,
            retryable=error.retryable,
        )
        return report

    async def run(self) -> RunReport:
        report = RunReport(run_id=self._run_id, started_at=now_iso())
        machine = RunStateMachine(logger=self._logger, run_id=self._run_id)

        machine.transition("reading_balances")
        try:
            base_balance, quote_balance, samples = await self._read_inputs()
        except DataUnavailable as error:
            return self._abort(machine, report, error, stage="reading_balances")

        report.balances = {
            self._config.base_asset.symbol: base_balance,
            self._config.quote_asset.symbol: quote_balance,
        }

        machine.transition("computing_signal")
        try:
            signal = compute_signal(samples)
        except DataUnavailable as error:
            return self._abort(machine, report, error, stage="computing_signal")
        report.signal = signal

        machine.transition("deciding")
        decisions = triggered_directions(
            signal=signal,
            base_balance=base_balance,
            quote_balance=quote_balance,
        )
        log_event(
            self._logger,
            level="info",
            event="rebalance_decision",
            message="Moving-average comparison evaluated",
            run_id=self._run_id,
            latest=str(signal.latest),
            average=str(signal.average),
            sample_count=signal.sample_count,
            balances=report.balances,
            decisions={direction: reason or "triggered" for direction, reason in decisions.items()},
        )

        for direction, reason in decisions.items():
            if reason is None:
                continue
            report.legs.append(
                LegOutcome(direction=direction, status="not_triggered", stage="deciding", reason=reason)
            )

        triggered = [direction for direction, reason in decisions.items() if reason is None]
        if not triggered:
            machine.transition("aborted", reason="no_trade_warranted")
            report.final_state = machine.state
            self._log_finished(report)
            return report

        balances = {"base_to_quote": base_balance, "quote_to_base": quote_balance}
        for direction in triggered:
            outcome = await self._run_leg(
                machine,
                direction=direction,
                balance=balances[direction],
                signal=signal,
            )
            report.legs.append(outcome)

        moved = any(leg.status in {"submitted", "dry_run"} for leg in report.legs)
        machine.transition("done" if moved else "aborted")
        report.final_state = machine.state
        self._log_finished(report)
        return report

    def _leg_failed(
        self,
        machine: RunStateMachine,
        *,
        direction: TradeDirection,
        stage: str,
        error: RebalancerError,
        intent: TradeIntent,
        expected_out: int | None = None,
    ) -> LegOutcome:
        outcome = LegOutcome(
            direction=direction,
            status="failed",
            stage=stage,
            reason=str(error),
            amount_in=intent.amount,
            expected_out=expected_out,
            error_type=type(error).__name__,
            retryable=error.retryable,
        )
        log_event(
            self._logger,
            level="error",
            event="leg_failed",
            message="Rebalance leg failed",
            run_id=self._run_id,
            direction=direction,
            stage=stage,
            error_type=outcome.error_type,
            error=outcome.reason,
            retryable=error.retryable,
            details=error.details,
        )
        machine.transition("deciding")
        return outcome

    async def _run_leg(
        self,
        machine: RunStateMachine,
        *,
        direction: TradeDirection,
        balance: int,
        signal: PriceSignal,
    ) -> LegOutcome:
        from_asset, to_asset = self._assets(direction)

        machine.transition("sizing", direction=direction)
        try:
            amount = size_trade(
                direction=direction,
                balance=balance,
                max_notional=self._config.max_trade_notional,
                price=signal.latest,
                source=from_asset,
            )
        except InvalidAmount as error:
            log_event(
                self._logger,
                level="info",
                event="leg_skipped",
                message="Rebalance leg skipped; sized amount is zero",
                run_id=self._run_id,
                direction=direction,
                reason=str(error),
                details=error.details,
            )
            machine.transition("deciding")
            return LegOutcome(direction=direction, status="skipped", stage="sizing", reason=str(error), amount_in=0)

        intent = TradeIntent(direction=direction, from_asset=from_asset, to_asset=to_asset, amount=amount)
        log_event(
            self._logger,
            level="info",
            event="leg_sized",
            message="Rebalance leg sized",
            run_id=self._run_id,
            direction=direction,
            amount_in=amount,
            units=str(from_asset.units(amount)),
            asset=from_asset.symbol,
        )

        machine.transition("quoting", direction=direction)
        try:
            quote = await self._quoter.quote(from_asset=from_asset, to_asset=to_asset, amount=amount)
        except RebalancerError as error:
            return self._leg_failed(machine, direction=direction, stage="quoting", error=error, intent=intent)

        machine.transition("executing", direction=direction)
        try:
            submission = await self._executor.execute(
                quote=quote,
                intent=intent,
                slippage_bps=self._config.slippage_bps,
                deadline_seconds=self._config.deadline_seconds,
            )
        except RebalancerError as error:
            return self._leg_failed(
                machine,
                direction=direction,
                stage="executing",
                error=error,
                intent=intent,
                expected_out=quote.expected_out,
            )

        machine.transition("deciding")
        return LegOutcome(
            direction=direction,
            status="dry_run" if submission.dry_run else "submitted",
            stage="executing",
            reason="swap built (dry run)" if submission.dry_run else "swap broadcast",
            amount_in=amount,
            expected_out=quote.expected_out,
            minimum_out=submission.minimum_out,
            tx_hash=submission.tx_hash,
        )

    def _log_finished(self, report: RunReport) -> None:
        failed = [f"{leg.direction}@{leg.stage}" for leg in report.legs if leg.failed]
        log_event(
            self._logger,
            level="error" if failed else "info",
            event="run_finished",
            message="Rebalance run finished",
            run_id=self._run_id,
            final_state=report.final_state,
            exit_code=report.exit_code,
            failed_legs=failed,
            legs=[leg.to_dict() for leg in report.legs],
        )
