from __future__ import annotations

import math

import pytest

from conftest import make_candles
from perpsim.backtesting.types import Candle
from perpsim.errors import InsufficientHistoryError
from perpsim.signals.indicators import adx, atr, bollinger, ema, rsi


def _trend_candles(count: int) -> list[Candle]:
    """Each bar's high and low sit exactly one point above the previous bar's."""
    return [
        Candle(open_time=i, close_time=i, open=100 + i, high=101 + i, low=99 + i, close=100.5 + i, volume=1.0)
        for i in range(count)
    ]


def test_rsi_matches_hand_computed_wilder_value() -> None:
    # gains [1, 1, 0] losses [0, 0, 1]: avg gain 0.5, avg loss 0.5
    assert rsi(make_candles([1, 2, 3, 2]), 2) == pytest.approx(50.0)


def test_rsi_is_100_without_losses_and_50_when_flat() -> None:
    assert rsi(make_candles([1, 2, 3, 4, 5, 6]), 3) == 100.0
    assert rsi(make_candles([5, 5, 5, 5, 5]), 3) == 50.0


def test_rsi_stays_in_range(wave_candles) -> None:
    for end in range(20, len(wave_candles)):
        value = rsi(wave_candles[:end], 14)
        assert 0.0 <= value <= 100.0


def test_bollinger_bands_use_population_std_of_last_period() -> None:
    bands = bollinger(make_candles([1, 2, 3, 4, 5]), 4, 2.0)
    assert bands.middle == pytest.approx(3.5)
    assert bands.upper == pytest.approx(3.5 + 2 * math.sqrt(1.25))
    assert bands.lower == pytest.approx(3.5 - 2 * math.sqrt(1.25))


def test_ema_is_seeded_with_sma() -> None:
    assert ema(make_candles([1, 2, 3, 4, 5, 6]), 3) == pytest.approx([2.0, 3.0, 4.0, 5.0])


def test_atr_of_constant_range_candles() -> None:
    assert atr(_trend_candles(30), 14) == pytest.approx(2.0)


def test_adx_of_one_way_trend_is_maximal() -> None:
    assert adx(_trend_candles(60), 14) == pytest.approx(100.0)


def test_adx_with_short_window_uses_mean_of_available_dx() -> None:
    value = adx(_trend_candles(16), 14)
    assert value == pytest.approx(100.0)


def test_short_window_raises_insufficient_history() -> None:
    with pytest.raises(InsufficientHistoryError) as excinfo:
        rsi(make_candles([1, 2, 3]), 14)
    assert excinfo.value.required == 15
    assert excinfo.value.available == 3


def test_non_positive_period_is_rejected() -> None:
    with pytest.raises(ValueError):
        bollinger(make_candles([1, 2, 3]), 0, 2.0)
