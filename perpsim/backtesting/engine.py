from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from perpsim.backtesting.metrics import calculate_metrics
from perpsim.backtesting.types import (
    BacktestConfig,
    BacktestResult,
    Candle,
    Direction,
    EquityPoint,
    ExitReason,
    Position,
    RiskParameters,
    Signal,
    Trade,
)
from perpsim.errors import InsufficientHistoryError
from perpsim.signals.base_signal import BaseSignal, SignalDecision
from perpsim.signals.signal_manager import build_signal

logger = logging.getLogger(__name__)

MIN_LOOKBACK = 50
LOOKBACK_MARGIN = 10

_ENTRY_SIGNALS = {Signal.LONG: Direction.LONG, Signal.SHORT: Direction.SHORT}
_CLOSE_SIGNALS = {Signal.CLOSE_LONG: Direction.LONG, Signal.CLOSE_SHORT: Direction.SHORT}


def liquidation_price(position: Position, risk: RiskParameters) -> float:
    if position.direction is Direction.LONG:
        return position.entry_price * (1 - 1 / risk.leverage + risk.maintenance_margin_ratio)
    return position.entry_price * (1 + 1 / risk.leverage - risk.maintenance_margin_ratio)


def calculate_pnl(equity: float, position: Position, exit_price: float, risk: RiskParameters) -> float:
    """Net PnL of closing *position* at *exit_price*, entry and exit fees included."""
    change = (exit_price - position.entry_price) / position.entry_price * position.direction.sign
    gross = equity * position.size_fraction * change * risk.leverage
    fees = equity * position.size_fraction * risk.trading_fee_rate * 2
    return gross - fees


def parse_candles(candles: Sequence[Candle | Mapping[str, Any]]) -> list[Candle]:
    return [c if isinstance(c, Candle) else Candle.from_mapping(c) for c in candles]


@dataclass
class _RunState:
    equity: float
    position: Position | None = None
    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)


class Backtester:
    """Deterministic single-position leveraged backtesting engine.

    The instance only holds configuration; all run state lives in a
    ``_RunState`` created per ``run()`` call, so repeated runs over the same
    candles produce identical results.
    """

    def __init__(self, config: BacktestConfig, signal: BaseSignal | None = None) -> None:
        self.config = config
        self.signal = signal or build_signal(config.strategy_name)

    @property
    def lookback(self) -> int:
        params = self.config.strategy_params
        periods = self.signal.periods(params)
        return max(MIN_LOOKBACK, max(periods) + LOOKBACK_MARGIN, self.signal.required_history(params) - 1)

    def run(self, candles: Sequence[Candle | Mapping[str, Any]]) -> BacktestResult:
        series = parse_candles(candles)
        lookback = self.lookback
        if len(series) <= lookback:
            raise InsufficientHistoryError(lookback + 1, len(series), "backtest")

        logger.info(
            "Starting backtest on %s/%s with %d candles (strategy=%s, leverage=%sx, size=%s)",
            self.config.symbol,
            self.config.timeframe,
            len(series),
            self.signal.name,
            self.config.risk.leverage,
            self.config.risk.position_size_fraction,
        )

        state = self._new_state()
        for idx in range(lookback, len(series)):
            self._step(state, series, idx, lookback)

        metrics = calculate_metrics(state.trades, state.equity_curve, self.config.initial_capital)
        logger.info(
            "Backtest finished: trades=%d pnl=%.2f max_dd=%.4f sharpe=%.4f margin_calls=%d",
            metrics.total_trades,
            metrics.total_profit_loss,
            metrics.max_drawdown,
            metrics.sharpe_ratio,
            metrics.margin_calls,
        )

        return BacktestResult(
            metrics=metrics,
            trades=list(state.trades),
            equity_curve=list(state.equity_curve),
            metadata={
                "symbol": self.config.symbol,
                "timeframe": self.config.timeframe,
                "strategy_name": self.signal.name,
                "candles": len(series),
                "lookback": lookback,
                "initial_capital": self.config.initial_capital,
                # Left open at termination; never force-closed.
                "open_position": state.position.to_dict() if state.position else None,
                **self._extra_metadata(state),
            },
        )

    # ── Extension points ──────────────────────────────────────────────────────

    def _new_state(self) -> _RunState:
        return _RunState(equity=self.config.initial_capital)

    def _extra_metadata(self, state: _RunState) -> dict[str, Any]:
        return {}

    def _open(
        self,
        state: _RunState,
        bar: Candle,
        window: list[Candle],
        direction: Direction,
        decision: SignalDecision,
    ) -> None:
        """Open a fixed-fraction position at the bar close."""
        state.position = Position(
            direction=direction,
            entry_price=bar.close,
            size_fraction=self.config.risk.position_size_fraction,
            entry_time=bar.open_time,
            take_profit_price=decision.take_profit_price,
        )

    def _on_trade_closed(self, state: _RunState, trade: Trade) -> None:
        pass

    # ── Bar loop ──────────────────────────────────────────────────────────────

    def _step(self, state: _RunState, series: list[Candle], idx: int, lookback: int) -> None:
        bar = series[idx]
        price = bar.close
        risk = self.config.risk

        position = state.position
        if position is not None and position.take_profit_price is not None:
            tp = position.take_profit_price
            hit = price >= tp if position.direction is Direction.LONG else price <= tp
            if hit:
                self._close(state, position, bar, tp, ExitReason.TAKE_PROFIT)

        position = state.position
        if position is not None:
            liq = liquidation_price(position, risk)
            hit = price <= liq if position.direction is Direction.LONG else price >= liq
            if hit:
                self._liquidate(state, position, bar)

        position = state.position
        if position is not None and position.stop_loss_price is not None:
            stop = position.stop_loss_price
            hit = price <= stop if position.direction is Direction.LONG else price >= stop
            if hit:
                self._close(state, position, bar, stop, ExitReason.STOP_LOSS)

        window = series[idx - lookback : idx + 1]
        current = state.position.direction if state.position else None
        decision = self.signal.evaluate(window, self.config.strategy_params, current)

        if decision.signal in _ENTRY_SIGNALS and state.position is None:
            self._open(state, bar, window, _ENTRY_SIGNALS[decision.signal], decision)
            if state.position is not None:
                logger.debug(
                    "Entered %s at %.6f (size=%s, tp=%s, sl=%s, equity=%.2f)",
                    state.position.direction.value,
                    price,
                    state.position.size_fraction,
                    state.position.take_profit_price,
                    state.position.stop_loss_price,
                    state.equity,
                )
        elif (
            decision.signal in _CLOSE_SIGNALS
            and state.position is not None
            and state.position.direction is _CLOSE_SIGNALS[decision.signal]
        ):
            self._close(state, state.position, bar, price, ExitReason.SIGNAL)

        state.equity_curve.append(
            EquityPoint(
                time=bar.open_time,
                equity=state.equity,
                has_position=state.position is not None,
                position_direction=state.position.direction if state.position else None,
                price=price,
            )
        )

    def _close(
        self, state: _RunState, position: Position, bar: Candle, exit_price: float, reason: ExitReason
    ) -> None:
        pnl = calculate_pnl(state.equity, position, exit_price, self.config.risk)
        state.equity += pnl
        self._record(state, position, exit_price, pnl, bar, reason)

    def _liquidate(self, state: _RunState, position: Position, bar: Candle) -> None:
        margin = position.size_fraction * state.equity / self.config.risk.leverage
        pnl = -margin
        state.equity += pnl
        self._record(state, position, bar.close, pnl, bar, ExitReason.LIQUIDATION)

    def _record(
        self,
        state: _RunState,
        position: Position,
        exit_price: float,
        pnl: float,
        bar: Candle,
        reason: ExitReason,
    ) -> None:
        trade = Trade(
            direction=position.direction,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            entry_time=position.entry_time,
            exit_time=bar.open_time,
            exit_reason=reason,
        )
        state.trades.append(trade)
        state.position = None
        self._on_trade_closed(state, trade)
        logger.debug(
            "Closed %s %.6f -> %.6f (%s) pnl=%.4f equity=%.2f",
            position.direction.value,
            position.entry_price,
            exit_price,
            reason.value,
            pnl,
            state.equity,
        )
