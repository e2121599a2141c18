"""Risk-managed position sizing on top of the fixed-fraction engine.

``RiskAwareBacktester`` runs the same bar loop as ``Backtester`` but asks a
``RiskManager`` how much equity to commit on every entry, and attaches a
stop-loss to each position. Sizing starts from ``max_risk_per_trade`` and is
then adjusted, in order, for recent volatility, win/loss streaks
(anti-martingale) and the Kelly criterion, before being capped at
``max_position_size``. The drawdown guard overrides all of it: once equity
falls ``max_drawdown`` below its high-water mark, entries are skipped.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field, fields
from statistics import fmean, pstdev
from typing import Any, Sequence

from perpsim.backtesting.engine import Backtester, _RunState
from perpsim.backtesting.types import BacktestConfig, Candle, Direction, Position, Trade
from perpsim.signals import indicators
from perpsim.signals.base_signal import BaseSignal, SignalDecision

logger = logging.getLogger(__name__)

HISTORY_SIZE = 50
KELLY_MIN_TRADES = 10
STREAK_CAP = 3
VOLATILITY_REFERENCE = 0.02
VOLATILITY_ADJUSTMENT_CAP = 2.0
HIGH_VOLATILITY = 0.04


@dataclass(frozen=True)
class RiskManagementSettings:
    max_risk_per_trade: float = 0.02
    max_position_size: float = 0.5
    max_drawdown: float = 0.25
    use_volatility_adjustment: bool = False
    volatility_window: int = 20
    use_anti_martingale: bool = False
    win_multiplier: float = 1.5
    loss_multiplier: float = 0.7
    use_kelly_criterion: bool = False
    kelly_fraction: float = 0.5
    use_stop_loss: bool = True
    stop_atr_multiple: float = 2.0
    stop_loss_percent: float = 0.025
    atr_period: int = 14

    def __post_init__(self) -> None:
        for name in ("max_risk_per_trade", "max_position_size", "max_drawdown"):
            if not 0 < getattr(self, name) <= 1:
                raise ValueError(f"{name} must be in (0, 1]")
        if not 0 < self.kelly_fraction <= 1:
            raise ValueError("kelly_fraction must be in (0, 1]")
        if self.win_multiplier <= 0 or self.loss_multiplier <= 0:
            raise ValueError("win_multiplier and loss_multiplier must be > 0")
        if self.stop_atr_multiple <= 0 or not 0 < self.stop_loss_percent < 1:
            raise ValueError("stop distances must be positive and stop_loss_percent below 1")
        for name in ("volatility_window", "atr_period"):
            if int(getattr(self, name)) < 2:
                raise ValueError(f"{name} must be >= 2")
            object.__setattr__(self, name, int(getattr(self, name)))

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Recommendation:
    action: str  # stop | reduce | increase | normal
    reason: str
    adjustment: float = 1.0
    severity: str = "low"


@dataclass(frozen=True)
class SizingDecision:
    time: int
    direction: Direction
    fraction: float
    risk_fraction: float
    action: str
    adjustment: float
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "direction": self.direction.value}


class RiskManager:
    """Tracks equity, streaks and volatility for one run and sizes entries from them."""

    def __init__(self, settings: RiskManagementSettings, initial_capital: float) -> None:
        self.settings = settings
        self.initial_capital = initial_capital
        self.equity = initial_capital
        self.high_water_mark = initial_capital
        self.drawdown = 0.0
        self.volatility = 0.0
        self.recent_pnls: deque[float] = deque(maxlen=HISTORY_SIZE)
        self.consecutive_wins = 0
        self.consecutive_losses = 0
        # Priors until trades exist.
        self.win_rate = 0.5
        self.win_loss_ratio = 1.0

    def update_equity(self, equity: float) -> None:
        self.equity = equity
        self.high_water_mark = max(self.high_water_mark, equity)
        self.drawdown = (self.high_water_mark - equity) / self.high_water_mark

    def update_volatility(self, window: Sequence[Candle]) -> None:
        """Population std-dev of close-to-close returns over the last ``volatility_window`` bars."""
        if not self.settings.use_volatility_adjustment:
            return
        size = self.settings.volatility_window
        if len(window) <= size:
            return
        closes = [c.close for c in window[-size:]]
        returns = [(cur - prev) / prev for prev, cur in zip(closes, closes[1:])]
        self.volatility = pstdev(returns)

    def record_trade(self, pnl: float) -> None:
        self.recent_pnls.append(pnl)
        if pnl > 0:
            self.consecutive_wins += 1
            self.consecutive_losses = 0
        elif pnl < 0:
            self.consecutive_losses += 1
            self.consecutive_wins = 0

        wins = [p for p in self.recent_pnls if p > 0]
        losses = [-p for p in self.recent_pnls if p < 0]
        self.win_rate = len(wins) / len(self.recent_pnls)
        avg_win = fmean(wins) if wins else 0.0
        avg_loss = fmean(losses) if losses else 0.0
        self.win_loss_ratio = avg_win / avg_loss if avg_loss > 0 else 1.0

    def risk_fraction(self) -> tuple[float, str]:
        """Fraction of equity to commit to the next entry, with the reason."""
        s = self.settings
        if self.drawdown >= s.max_drawdown:
            return 0.0, f"Max drawdown reached ({self.drawdown:.2%})"

        fraction = s.max_risk_per_trade
        if s.use_volatility_adjustment and self.volatility > 0:
            fraction /= min(self.volatility / VOLATILITY_REFERENCE, VOLATILITY_ADJUSTMENT_CAP)

        if s.use_anti_martingale:
            if self.consecutive_wins > 0:
                fraction *= s.win_multiplier ** min(self.consecutive_wins, STREAK_CAP)
            elif self.consecutive_losses > 0:
                fraction *= s.loss_multiplier ** min(self.consecutive_losses, STREAK_CAP)

        if s.use_kelly_criterion and len(self.recent_pnls) >= KELLY_MIN_TRADES:
            b = self.win_loss_ratio
            kelly = (self.win_rate * b - (1 - self.win_rate)) / b if b > 0 else 0.0
            fraction = min(fraction, max(0.0, kelly) * s.kelly_fraction)

        return min(fraction, s.max_position_size), "Standard position"

    def recommendation(self) -> Recommendation:
        s = self.settings
        if self.drawdown >= s.max_drawdown:
            return Recommendation("stop", f"Max drawdown reached ({self.drawdown:.2%})", 0.0, "high")
        if self.drawdown >= s.max_drawdown * 0.7:
            return Recommendation("reduce", f"High drawdown ({self.drawdown:.2%})", 0.5, "medium")
        if self.consecutive_losses >= STREAK_CAP:
            return Recommendation(
                "reduce",
                f"{self.consecutive_losses} consecutive losses",
                0.8**self.consecutive_losses,
                "medium",
            )
        if s.use_volatility_adjustment and self.volatility > HIGH_VOLATILITY:
            return Recommendation("reduce", f"High volatility ({self.volatility:.2%})", 0.7, "medium")
        if self.consecutive_wins >= STREAK_CAP and self.drawdown < 0.1:
            return Recommendation(
                "increase",
                f"{self.consecutive_wins} consecutive wins with low drawdown",
                min(1.5, 1 + self.consecutive_wins * 0.1),
            )
        return Recommendation("normal", "Regular trading conditions")

    def stop_loss_price(self, direction: Direction, entry_price: float, atr_value: float | None = None) -> float:
        if atr_value is not None:
            distance = atr_value * self.settings.stop_atr_multiple
        else:
            distance = entry_price * self.settings.stop_loss_percent
        return entry_price - distance * direction.sign

    def stats(self) -> dict[str, Any]:
        return {
            "equity": self.equity,
            "initial_capital": self.initial_capital,
            "high_water_mark": self.high_water_mark,
            "drawdown": self.drawdown,
            "consecutive_wins": self.consecutive_wins,
            "consecutive_losses": self.consecutive_losses,
            "win_rate": self.win_rate,
            "win_loss_ratio": self.win_loss_ratio,
            "volatility": self.volatility,
        }


@dataclass
class _RiskRunState(_RunState):
    risk_manager: RiskManager = field(kw_only=True)
    sizing: list[SizingDecision] = field(default_factory=list)
    skipped_entries: int = 0


class RiskAwareBacktester(Backtester):
    """``Backtester`` whose entries are sized and stopped by a ``RiskManager``.

    Exits keep the base precedence (take-profit, liquidation) with the
    stop-loss checked after liquidation and before the signal.
    """

    def __init__(
        self,
        config: BacktestConfig,
        risk_settings: RiskManagementSettings | None = None,
        signal: BaseSignal | None = None,
    ) -> None:
        super().__init__(config, signal)
        self.risk_settings = risk_settings or RiskManagementSettings()

    def _new_state(self) -> _RiskRunState:
        manager = RiskManager(self.risk_settings, self.config.initial_capital)
        return _RiskRunState(equity=self.config.initial_capital, risk_manager=manager)

    def _open(
        self,
        state: _RiskRunState,
        bar: Candle,
        window: list[Candle],
        direction: Direction,
        decision: SignalDecision,
    ) -> None:
        manager = state.risk_manager
        manager.update_volatility(window)
        risk_fraction, reason = manager.risk_fraction()
        advice = manager.recommendation()
        fraction = 0.0 if advice.action == "stop" else min(1.0, risk_fraction * advice.adjustment)
        if advice.action != "normal":
            reason = advice.reason

        state.sizing.append(
            SizingDecision(
                time=bar.open_time,
                direction=direction,
                fraction=fraction,
                risk_fraction=risk_fraction,
                action=advice.action,
                adjustment=advice.adjustment,
                reason=reason,
            )
        )
        if fraction <= 0:
            state.skipped_entries += 1
            logger.info("Skipped %s entry at %d: %s", direction.value, bar.open_time, advice.reason)
            return

        stop = None
        if self.risk_settings.use_stop_loss:
            atr_period = self.risk_settings.atr_period
            atr_value = indicators.atr(window, atr_period) if len(window) > atr_period else None
            stop = manager.stop_loss_price(direction, bar.close, atr_value)

        state.position = Position(
            direction=direction,
            entry_price=bar.close,
            size_fraction=fraction,
            entry_time=bar.open_time,
            take_profit_price=decision.take_profit_price,
            stop_loss_price=stop,
        )

    def _on_trade_closed(self, state: _RiskRunState, trade: Trade) -> None:
        state.risk_manager.record_trade(trade.pnl)
        state.risk_manager.update_equity(state.equity)

    def _extra_metadata(self, state: _RiskRunState) -> dict[str, Any]:
        return {
            "risk_management": {
                "settings": self.risk_settings.to_dict(),
                "stats": state.risk_manager.stats(),
                "sizing": [d.to_dict() for d in state.sizing],
                "skipped_entries": state.skipped_entries,
            }
        }
