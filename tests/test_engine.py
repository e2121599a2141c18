from __future__ import annotations

import pytest

from conftest import ScriptedSignal, make_candles
from perpsim.backtesting.engine import Backtester, calculate_pnl, liquidation_price
from perpsim.backtesting.types import (
    BacktestConfig,
    Direction,
    ExitReason,
    Position,
    RiskParameters,
    Signal,
    StrategyParameters,
)
from perpsim.errors import InsufficientHistoryError, MalformedCandleError
from perpsim.signals.base_signal import SignalDecision

LOOKBACK = 50


def _config(**risk) -> BacktestConfig:
    return BacktestConfig(symbol="BTC", timeframe="15m", risk=RiskParameters(**risk))


def _flat_then(tail: list[float], price: float = 100.0) -> list:
    return make_candles([price] * (LOOKBACK + 1) + tail)


def test_liquidation_price_formula() -> None:
    risk = RiskParameters(leverage=10, maintenance_margin_ratio=0.005)
    long = Position(Direction.LONG, entry_price=100, size_fraction=0.1, entry_time=0)
    short = Position(Direction.SHORT, entry_price=100, size_fraction=0.1, entry_time=0)
    assert liquidation_price(long, risk) == pytest.approx(90.5)
    assert liquidation_price(short, risk) == pytest.approx(109.5)


def test_pnl_includes_leverage_and_round_trip_fees() -> None:
    risk = RiskParameters(leverage=10, trading_fee_rate=0.001)
    position = Position(Direction.SHORT, entry_price=100, size_fraction=0.1, entry_time=0)
    # 2% favourable move on 100 notional at 10x = 20, minus 2 * 0.1 fees
    assert calculate_pnl(1000.0, position, 98.0, risk) == pytest.approx(19.8)


def test_lookback_is_at_least_fifty_and_tracks_long_periods() -> None:
    assert Backtester(_config()).lookback == 50
    config = BacktestConfig(symbol="BTC", timeframe="15m", strategy_params=StrategyParameters(bb_period=60))
    assert Backtester(config).lookback == 70


def test_liquidation_scenario() -> None:
    candles = _flat_then([90.0, 95.0])
    entry_time = candles[LOOKBACK].open_time
    signal = ScriptedSignal({entry_time: SignalDecision(Signal.LONG)})

    result = Backtester(_config(leverage=10, position_size_fraction=0.1), signal).run(candles)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason is ExitReason.LIQUIDATION
    assert trade.entry_price == 100.0
    assert trade.exit_price == 90.0
    assert trade.pnl == pytest.approx(-0.1 * 1000.0 / 10)
    assert result.metrics.margin_calls == 1
    assert result.metrics.final_equity == pytest.approx(990.0)
    assert result.metadata["open_position"] is None


def test_take_profit_fires_before_the_signal_is_evaluated() -> None:
    candles = _flat_then([102.0, 102.0])
    entry_time = candles[LOOKBACK].open_time
    tp_bar = candles[LOOKBACK + 1].open_time
    signal = ScriptedSignal(
        {
            entry_time: SignalDecision(Signal.LONG, take_profit_price=101.5),
            tp_bar: SignalDecision(Signal.SHORT, take_profit_price=100.0),
        }
    )

    result = Backtester(_config(), signal).run(candles)

    assert signal.seen[tp_bar] is None
    trade = result.trades[0]
    assert trade.exit_reason is ExitReason.TAKE_PROFIT
    assert trade.exit_price == 101.5
    assert trade.pnl == pytest.approx(1000 * 0.1 * 0.015 * 10 - 1000 * 0.1 * 0.001 * 2)
    # The short opened on the same bar is still open at the end.
    assert result.metadata["open_position"]["direction"] == "SHORT"
    assert result.metrics.short_trades == 1
    assert result.metrics.long_trades == 1


def test_close_signal_only_applies_to_matching_position() -> None:
    candles = _flat_then([101.0, 103.0, 104.0])
    t = [c.open_time for c in candles]
    signal = ScriptedSignal(
        {
            t[LOOKBACK]: SignalDecision(Signal.LONG),
            t[LOOKBACK + 1]: SignalDecision(Signal.CLOSE_SHORT),
            t[LOOKBACK + 2]: SignalDecision(Signal.CLOSE_LONG),
        }
    )

    result = Backtester(_config(), signal).run(candles)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason is ExitReason.SIGNAL
    assert trade.exit_price == 103.0
    assert trade.exit_time == t[LOOKBACK + 2]


def test_entry_signal_ignored_while_position_is_open() -> None:
    candles = _flat_then([100.5, 100.8])
    t = [c.open_time for c in candles]
    signal = ScriptedSignal(
        {
            t[LOOKBACK]: SignalDecision(Signal.LONG),
            t[LOOKBACK + 1]: SignalDecision(Signal.SHORT),
        }
    )

    result = Backtester(_config(), signal).run(candles)

    assert result.trades == []
    assert result.metadata["open_position"]["direction"] == "LONG"
    assert result.metadata["open_position"]["entry_price"] == 100.0


def test_equity_curve_has_one_point_per_evaluated_candle() -> None:
    candles = _flat_then([100.0] * 9)
    result = Backtester(_config(), ScriptedSignal()).run(candles)

    assert len(result.equity_curve) == len(candles) - LOOKBACK
    assert [p.time for p in result.equity_curve] == [c.open_time for c in candles[LOOKBACK:]]
    assert all(p.equity == 1000.0 for p in result.equity_curve)
    assert result.metrics.max_drawdown == 0.0


def test_run_requires_more_candles_than_lookback() -> None:
    with pytest.raises(InsufficientHistoryError):
        Backtester(_config(), ScriptedSignal()).run(make_candles([100.0] * LOOKBACK))


def test_malformed_candle_fails_the_run() -> None:
    candles = [c.to_dict() for c in _flat_then([100.0])]
    del candles[10]["close"]
    with pytest.raises(MalformedCandleError):
        Backtester(_config()).run(candles)


def test_runs_are_deterministic(wave_candles) -> None:
    backtester = Backtester(_config(leverage=5))
    first = backtester.run(wave_candles).to_dict()
    second = backtester.run(wave_candles).to_dict()
    assert first == second


def test_positions_never_overlap_and_equity_adds_up(wave_candles) -> None:
    params = StrategyParameters(rsi_oversold=40, rsi_overbought=60, adx_threshold=10)
    config = BacktestConfig(symbol="BTC", timeframe="15m", strategy_params=params)
    result = Backtester(config).run(wave_candles)

    for prev, cur in zip(result.trades, result.trades[1:]):
        assert cur.entry_time >= prev.exit_time
    expected = 1000.0 + sum(t.pnl for t in result.trades)
    assert result.equity_curve[-1].equity == pytest.approx(expected)
    assert result.metrics.total_trades == len(result.trades)


def test_short_take_profit_fires_when_price_falls_to_target() -> None:
    candles = _flat_then([99.0, 98.0])
    t = [c.open_time for c in candles]
    signal = ScriptedSignal({t[LOOKBACK]: SignalDecision(Signal.SHORT, take_profit_price=98.5)})

    result = Backtester(_config(leverage=10, position_size_fraction=0.1), signal).run(candles)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.direction is Direction.SHORT
    assert trade.exit_reason is ExitReason.TAKE_PROFIT
    assert trade.exit_price == 98.5
    assert trade.exit_time == t[LOOKBACK + 2]
    assert trade.pnl == pytest.approx(1000 * 0.1 * 0.015 * 10 - 1000 * 0.1 * 0.001 * 2)
    assert result.metadata["open_position"] is None


def test_short_is_liquidated_when_price_rises_past_threshold() -> None:
    candles = _flat_then([109.0, 110.0, 104.0])
    t = [c.open_time for c in candles]
    signal = ScriptedSignal({t[LOOKBACK]: SignalDecision(Signal.SHORT)})

    result = Backtester(_config(leverage=10, position_size_fraction=0.1), signal).run(candles)

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.direction is Direction.SHORT
    assert trade.exit_reason is ExitReason.LIQUIDATION
    # 109.0 is still inside the 109.5 threshold; 110.0 is not.
    assert trade.exit_time == t[LOOKBACK + 2]
    assert trade.exit_price == 110.0
    assert trade.pnl == pytest.approx(-10.0)
    assert result.metrics.margin_calls == 1
    assert result.metrics.final_equity == pytest.approx(990.0)
