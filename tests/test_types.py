from __future__ import annotations

import pytest

from perpsim.backtesting.types import BacktestConfig, Candle, RiskParameters, StrategyParameters
from perpsim.errors import MalformedCandleError


def test_candle_from_exchange_short_keys() -> None:
    candle = Candle.from_mapping({"t": 1000, "T": 1999, "o": "1.5", "h": "2", "l": "1", "c": "1.75", "v": "12"})
    assert candle == Candle(open_time=1000, close_time=1999, open=1.5, high=2.0, low=1.0, close=1.75, volume=12.0)


def test_candle_from_long_keys() -> None:
    row = {"open_time": 1, "close_time": 2, "open": 1, "high": 1, "low": 1, "close": 1, "volume": 0}
    assert Candle.from_mapping(row).to_dict() == row


@pytest.mark.parametrize(
    "row",
    [
        {"t": 1, "T": 2, "o": 1, "h": 1, "l": 1, "v": 1},
        {"t": 1, "T": 2, "o": 1, "h": 1, "l": 1, "c": "abc", "v": 1},
        {"t": 1, "T": 2, "o": 1, "h": 1, "l": 1, "c": float("nan"), "v": 1},
    ],
)
def test_malformed_candles_are_rejected(row) -> None:
    with pytest.raises(MalformedCandleError):
        Candle.from_mapping(row)


def test_strategy_periods_are_coerced_to_int() -> None:
    params = StrategyParameters(rsi_period=10.0, bb_period=20.0)
    assert params.rsi_period == 10
    assert isinstance(params.bb_period, int)
    with pytest.raises(ValueError):
        StrategyParameters(adx_period=0)


def test_risk_parameters_are_validated() -> None:
    with pytest.raises(ValueError):
        RiskParameters(leverage=0)
    with pytest.raises(ValueError):
        RiskParameters(position_size_fraction=1.5)
    with pytest.raises(ValueError):
        BacktestConfig(symbol="BTC", timeframe="15m", initial_capital=0)
