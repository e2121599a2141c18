from __future__ import annotations

from typing import Sequence

from perpsim.backtesting.types import Candle, Direction, Signal, StrategyParameters
from perpsim.signals.base_signal import BaseSignal, SignalDecision
from perpsim.signals.indicators import ema


class EMACrossSignalV1(BaseSignal):
    """Long-only short/long EMA crossover."""

    name = "ema_cross_v1"

    def periods(self, params: StrategyParameters) -> list[int]:
        return [params.ema_short_period, params.ema_long_period]

    def evaluate(
        self,
        window: Sequence[Candle],
        params: StrategyParameters,
        current_direction: Direction | None,
    ) -> SignalDecision:
        short = ema(window, params.ema_short_period)
        long = ema(window, params.ema_long_period)
        snapshot = {"ema_short": short[-1], "ema_long": long[-1], "price": window[-1].close}

        crossed_up = short[-1] > long[-1] and short[-2] < long[-2]
        crossed_down = short[-1] < long[-1] and short[-2] > long[-2]

        if current_direction is None and crossed_up:
            return SignalDecision(Signal.LONG, indicators=snapshot)
        if current_direction is Direction.LONG and crossed_down:
            return SignalDecision(Signal.CLOSE_LONG, indicators=snapshot)
        return SignalDecision(Signal.NONE, indicators=snapshot)
