from __future__ import annotations

from typing import Sequence

from perpsim.backtesting.types import Candle, Direction, Signal, StrategyParameters
from perpsim.signals.base_signal import BaseSignal, SignalDecision
from perpsim.signals.indicators import adx, bollinger, rsi

# Exit levels are fixed and independent of the entry thresholds.
RSI_EXIT_LONG = 80.0
RSI_EXIT_SHORT = 20.0


class BBRSISignalV1(BaseSignal):
    """Bollinger band cross filtered by RSI and ADX trend strength."""

    name = "bbrsi_v1"

    def periods(self, params: StrategyParameters) -> list[int]:
        return [params.rsi_period, params.bb_period, params.adx_period]

    def evaluate(
        self,
        window: Sequence[Candle],
        params: StrategyParameters,
        current_direction: Direction | None,
    ) -> SignalDecision:
        bands = bollinger(window, params.bb_period, params.bb_std_dev)
        adx_value = adx(window, params.adx_period)
        rsi_value = rsi(window, params.rsi_period)

        price = window[-1].close
        prev_price = window[-2].close
        snapshot = {
            "bb": {"lower": bands.lower, "middle": bands.middle, "upper": bands.upper},
            "rsi": rsi_value,
            "adx": adx_value,
            "price": price,
        }

        if current_direction is None:
            crossed_below_lower = prev_price >= bands.lower and price < bands.lower
            if crossed_below_lower and rsi_value < params.rsi_oversold and adx_value >= params.adx_threshold:
                return SignalDecision(
                    Signal.LONG,
                    take_profit_price=price * (1 + params.profit_target_percent / 100),
                    indicators=snapshot,
                )

            crossed_above_upper = prev_price <= bands.upper and price > bands.upper
            if crossed_above_upper and rsi_value > params.rsi_overbought and adx_value >= params.adx_threshold:
                return SignalDecision(
                    Signal.SHORT,
                    take_profit_price=price * (1 - params.profit_target_percent / 100),
                    indicators=snapshot,
                )

        elif current_direction is Direction.LONG:
            crossed_under_middle = prev_price >= bands.middle and price < bands.middle
            if crossed_under_middle or rsi_value > RSI_EXIT_LONG:
                return SignalDecision(Signal.CLOSE_LONG, indicators=snapshot)

        else:
            # Same downward lower-band cross as the long entry.
            crossed_under_lower = prev_price >= bands.lower and price < bands.lower
            if crossed_under_lower or rsi_value < RSI_EXIT_SHORT:
                return SignalDecision(Signal.CLOSE_SHORT, indicators=snapshot)

        return SignalDecision(Signal.NONE, indicators=snapshot)
