from __future__ import annotations

import math

import pytest

from perpsim.backtesting.metrics import calculate_metrics, max_drawdown, sharpe_ratio
from perpsim.backtesting.types import Direction, EquityPoint, ExitReason, Trade


def _trade(pnl: float, direction: Direction = Direction.LONG, reason: ExitReason = ExitReason.SIGNAL) -> Trade:
    return Trade(
        direction=direction,
        entry_price=100.0,
        exit_price=100.0,
        pnl=pnl,
        entry_time=0,
        exit_time=1,
        exit_reason=reason,
    )


def _curve(equities: list[float], last_direction: Direction | None = None) -> list[EquityPoint]:
    points = [
        EquityPoint(time=i, equity=e, has_position=False, position_direction=None, price=100.0)
        for i, e in enumerate(equities)
    ]
    if last_direction is not None:
        last = points[-1]
        points[-1] = EquityPoint(last.time, last.equity, True, last_direction, last.price)
    return points


def test_flat_curve_has_zero_drawdown() -> None:
    assert max_drawdown(_curve([1000.0] * 20), 1000.0) == 0.0


def test_drawdown_is_measured_from_running_peak() -> None:
    assert max_drawdown(_curve([1000.0, 1200.0, 900.0, 1300.0, 1170.0]), 1000.0) == pytest.approx(0.25)


def test_drawdown_counts_a_drop_below_initial_capital() -> None:
    assert max_drawdown(_curve([950.0, 980.0]), 1000.0) == pytest.approx(0.05)


def test_identical_returns_give_zero_sharpe() -> None:
    assert sharpe_ratio([_trade(10.0)] * 5, 1000.0) == 0.0


def test_sharpe_is_annualized_mean_over_std() -> None:
    trades = [_trade(10.0), _trade(-10.0), _trade(30.0)]
    returns = [0.01, -0.01, 0.03]
    mean = sum(returns) / 3
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / 3)
    assert sharpe_ratio(trades, 1000.0) == pytest.approx(mean / std * math.sqrt(252))


def test_trade_statistics() -> None:
    trades = [
        _trade(30.0),
        _trade(10.0, Direction.SHORT, ExitReason.TAKE_PROFIT),
        _trade(0.0),
        _trade(-20.0, reason=ExitReason.LIQUIDATION),
    ]
    metrics = calculate_metrics(trades, _curve([1000.0, 1020.0]), 1000.0)

    assert metrics.total_trades == 4
    assert metrics.winning_trades == 2
    # A break-even trade counts as a loss.
    assert metrics.losing_trades == 2
    assert metrics.win_rate == pytest.approx(0.5)
    assert metrics.total_profit_loss == pytest.approx(20.0)
    assert metrics.average_win == pytest.approx(20.0)
    assert metrics.average_loss == pytest.approx(-10.0)
    assert metrics.largest_win == 30.0
    assert metrics.largest_loss == -20.0
    assert metrics.profit_factor == pytest.approx(1.0)
    assert metrics.margin_calls == 1
    assert metrics.long_trades == 3
    assert metrics.short_trades == 1
    assert metrics.trades_by_exit_reason == {"SIGNAL": 2, "TAKE_PROFIT": 1, "LIQUIDATION": 1, "STOP_LOSS": 0}
    assert metrics.profit_by_exit_reason["LIQUIDATION"] == pytest.approx(-20.0)
    assert metrics.average_profit_per_trade == pytest.approx(5.0)
    assert metrics.final_equity == 1020.0


def test_profit_factor_is_zero_without_losses() -> None:
    metrics = calculate_metrics([_trade(5.0), _trade(7.0)], _curve([1012.0]), 1000.0)
    assert metrics.profit_factor == 0.0
    assert metrics.win_rate == 1.0


def test_open_position_counts_toward_direction_totals() -> None:
    metrics = calculate_metrics([], _curve([1000.0, 1000.0], last_direction=Direction.SHORT), 1000.0)
    assert metrics.total_trades == 0
    assert metrics.short_trades == 1
    assert metrics.long_trades == 0


def test_empty_run_is_all_zero_and_finite() -> None:
    metrics = calculate_metrics([], [], 1000.0)
    assert metrics.total_trades == 0
    assert metrics.sharpe_ratio == 0.0
    assert metrics.final_equity == 1000.0
    for value in metrics.to_dict().values():
        if isinstance(value, float):
            assert math.isfinite(value)
