from __future__ import annotations

import math
from statistics import fmean, pstdev
from typing import Sequence

from perpsim.backtesting.types import Direction, EquityPoint, ExitReason, Metrics, Trade

ANNUALIZATION_PERIODS = 252


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def max_drawdown(equity_curve: Sequence[EquityPoint], initial_capital: float) -> float:
    peak = initial_capital
    max_dd = 0.0
    for point in equity_curve:
        peak = max(peak, point.equity)
        if peak > 0:
            max_dd = max(max_dd, (peak - point.equity) / peak)
    return max_dd


def sharpe_ratio(trades: Sequence[Trade], initial_capital: float) -> float:
    """Annualized per-trade Sharpe; returns are pnl over initial capital."""
    if not trades or initial_capital == 0:
        return 0.0
    returns = [t.pnl / initial_capital for t in trades]
    if max(returns) == min(returns):
        return 0.0
    avg = fmean(returns)
    std = pstdev(returns, avg)
    return (avg / std) * math.sqrt(ANNUALIZATION_PERIODS) if std > 0 else 0.0


def calculate_metrics(
    trades: Sequence[Trade],
    equity_curve: Sequence[EquityPoint],
    initial_capital: float,
) -> Metrics:
    pnls = [t.pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p <= 0]
    total = len(pnls)

    open_direction = equity_curve[-1].position_direction if equity_curve else None
    long_trades = sum(1 for t in trades if t.direction is Direction.LONG) + (open_direction is Direction.LONG)
    short_trades = sum(1 for t in trades if t.direction is Direction.SHORT) + (open_direction is Direction.SHORT)

    trades_by_reason = {reason.value: 0 for reason in ExitReason}
    profit_by_reason = {reason.value: 0.0 for reason in ExitReason}
    for trade in trades:
        trades_by_reason[trade.exit_reason.value] += 1
        profit_by_reason[trade.exit_reason.value] += trade.pnl

    # Count ratio, not summed profit over summed loss.
    profit_factor = len(wins) / len(losses) if losses else 0.0

    return Metrics(
        total_trades=total,
        winning_trades=len(wins),
        losing_trades=len(losses),
        total_profit_loss=_finite(sum(pnls)),
        max_drawdown=_finite(max_drawdown(equity_curve, initial_capital)),
        sharpe_ratio=_finite(sharpe_ratio(trades, initial_capital)),
        long_trades=int(long_trades),
        short_trades=int(short_trades),
        margin_calls=trades_by_reason[ExitReason.LIQUIDATION.value],
        win_rate=len(wins) / total if total else 0.0,
        profit_factor=profit_factor,
        average_win=_finite(fmean(wins)) if wins else 0.0,
        average_loss=_finite(fmean(losses)) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        final_equity=_finite(equity_curve[-1].equity) if equity_curve else initial_capital,
        average_profit_per_trade=_finite(sum(pnls) / total) if total else 0.0,
        trades_by_exit_reason=trades_by_reason,
        profit_by_exit_reason={k: _finite(v) for k, v in profit_by_reason.items()},
    )
