from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

from perpsim.backtesting.types import Candle, Direction, Signal, StrategyParameters


@dataclass(frozen=True)
class SignalDecision:
    signal: Signal = Signal.NONE
    take_profit_price: float | None = None
    indicators: dict[str, Any] = field(default_factory=dict)


class BaseSignal(ABC):
    """Pure signal generator contract."""

    name: str = ""

    @abstractmethod
    def evaluate(
        self,
        window: Sequence[Candle],
        params: StrategyParameters,
        current_direction: Direction | None,
    ) -> SignalDecision:
        """Return the decision for the last candle of *window*."""

    @abstractmethod
    def periods(self, params: StrategyParameters) -> list[int]:
        """Indicator periods this variant reads from *params*."""

    def required_history(self, params: StrategyParameters) -> int:
        return max(self.periods(params)) + 2
