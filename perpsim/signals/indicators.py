"""Stateless indicator transforms over an ordered candle window.

Every function reads only its arguments and returns the value for the most
recent candle of the window. Windows shorter than ``period + 1`` candles raise
``InsufficientHistoryError``; the engine's lookback rule is what prevents that
in normal runs.
"""
from __future__ import annotations

from dataclasses import dataclass
from statistics import fmean, pstdev
from typing import Sequence

from perpsim.backtesting.types import Candle
from perpsim.errors import InsufficientHistoryError


@dataclass(frozen=True)
class BollingerBands:
    lower: float
    middle: float
    upper: float


def _require(window: Sequence[Candle], period: int, what: str) -> None:
    if period < 1:
        raise ValueError(f"{what} period must be >= 1, got {period}")
    if len(window) < period + 1:
        raise InsufficientHistoryError(period + 1, len(window), what)


def _closes(window: Sequence[Candle]) -> list[float]:
    return [c.close for c in window]


def _wilder(values: Sequence[float], period: int) -> list[float]:
    """Wilder smoothing seeded with the simple average of the first *period* values."""
    if len(values) < period:
        return []
    smoothed = [fmean(values[:period])]
    for value in values[period:]:
        smoothed.append((smoothed[-1] * (period - 1) + value) / period)
    return smoothed


def rsi(window: Sequence[Candle], period: int) -> float:
    _require(window, period, "RSI")
    closes = _closes(window)
    gains: list[float] = []
    losses: list[float] = []
    for prev, cur in zip(closes, closes[1:]):
        change = cur - prev
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))

    avg_gain = _wilder(gains, period)[-1]
    avg_loss = _wilder(losses, period)[-1]
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def bollinger(window: Sequence[Candle], period: int, std_dev_multiplier: float) -> BollingerBands:
    _require(window, period, "Bollinger")
    recent = _closes(window)[-period:]
    middle = fmean(recent)
    spread = std_dev_multiplier * pstdev(recent, middle)
    return BollingerBands(lower=middle - spread, middle=middle, upper=middle + spread)


def adx(window: Sequence[Candle], period: int) -> float:
    """Average Directional Index (0-100).

    True range and directional movement are Wilder-smoothed over *period*.
    When the window holds fewer than *period* DX values, the ADX is the mean
    of the DX values available.
    """
    _require(window, period, "ADX")
    true_ranges: list[float] = []
    plus_dm: list[float] = []
    minus_dm: list[float] = []
    for prev, cur in zip(window, window[1:]):
        up = cur.high - prev.high
        down = prev.low - cur.low
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)
        true_ranges.append(max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close)))

    dx_values: list[float] = []
    for tr, pdm, mdm in zip(_wilder(true_ranges, period), _wilder(plus_dm, period), _wilder(minus_dm, period)):
        if tr == 0:
            dx_values.append(0.0)
            continue
        plus_di = 100.0 * pdm / tr
        minus_di = 100.0 * mdm / tr
        di_sum = plus_di + minus_di
        dx_values.append(0.0 if di_sum == 0 else 100.0 * abs(plus_di - minus_di) / di_sum)

    if len(dx_values) < period:
        return fmean(dx_values)
    return _wilder(dx_values, period)[-1]


def ema(window: Sequence[Candle], period: int) -> list[float]:
    """EMA series seeded with the SMA of the first *period* closes."""
    _require(window, period, "EMA")
    closes = _closes(window)
    smoothing = 2.0 / (period + 1)
    values = [fmean(closes[:period])]
    for price in closes[period:]:
        values.append((price - values[-1]) * smoothing + values[-1])
    return values


def atr(window: Sequence[Candle], period: int) -> float:
    _require(window, period, "ATR")
    true_ranges = [
        max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close))
        for prev, cur in zip(window, window[1:])
    ]
    return _wilder(true_ranges, period)[-1]
