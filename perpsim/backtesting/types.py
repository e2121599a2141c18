from __future__ import annotations

import enum
import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping

from perpsim.errors import MalformedCandleError


class Direction(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class Signal(str, enum.Enum):
    NONE = "NONE"
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE_LONG = "CLOSE_LONG"
    CLOSE_SHORT = "CLOSE_SHORT"


class ExitReason(str, enum.Enum):
    SIGNAL = "SIGNAL"
    TAKE_PROFIT = "TAKE_PROFIT"
    LIQUIDATION = "LIQUIDATION"
    STOP_LOSS = "STOP_LOSS"


# Accepted spellings per field; the short keys are the exchange candle format.
_CANDLE_KEYS: dict[str, tuple[str, ...]] = {
    "open_time": ("open_time", "openTime", "t"),
    "close_time": ("close_time", "closeTime", "T"),
    "open": ("open", "o"),
    "high": ("high", "h"),
    "low": ("low", "l"),
    "close": ("close", "c"),
    "volume": ("volume", "v"),
}


@dataclass(frozen=True)
class Candle:
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "Candle":
        """Build a candle from a long-key or exchange short-key mapping."""
        values: dict[str, Any] = {}
        for name, aliases in _CANDLE_KEYS.items():
            raw = next((row[key] for key in aliases if key in row and row[key] is not None), None)
            if raw is None:
                raise MalformedCandleError(f"Candle is missing required field '{name}': {dict(row)!r}")
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise MalformedCandleError(f"Candle field '{name}' is not numeric: {raw!r}") from None
            if not math.isfinite(value):
                raise MalformedCandleError(f"Candle field '{name}' is not finite: {raw!r}")
            values[name] = int(value) if name.endswith("_time") else value
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StrategyParameters:
    rsi_period: int = 14
    rsi_overbought: float = 75
    rsi_oversold: float = 25
    bb_period: int = 20
    bb_std_dev: float = 2.0
    adx_period: int = 14
    adx_threshold: float = 25
    profit_target_percent: float = 1.5
    ema_short_period: int = 9
    ema_long_period: int = 21

    def __post_init__(self) -> None:
        for name in ("rsi_period", "bb_period", "adx_period", "ema_short_period", "ema_long_period"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1")
            object.__setattr__(self, name, int(getattr(self, name)))

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}


@dataclass(frozen=True)
class RiskParameters:
    leverage: float = 10.0
    position_size_fraction: float = 0.1
    trading_fee_rate: float = 0.001
    maintenance_margin_ratio: float = 0.005

    def __post_init__(self) -> None:
        if self.leverage <= 0:
            raise ValueError("leverage must be > 0")
        if not 0 < self.position_size_fraction <= 1:
            raise ValueError("position_size_fraction must be in (0, 1]")
        if self.trading_fee_rate < 0:
            raise ValueError("trading_fee_rate must be >= 0")
        if self.maintenance_margin_ratio < 0:
            raise ValueError("maintenance_margin_ratio must be >= 0")

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}


@dataclass(frozen=True)
class BacktestConfig:
    symbol: str
    timeframe: str
    strategy_name: str = "bbrsi_v1"
    strategy_params: StrategyParameters = field(default_factory=StrategyParameters)
    risk: RiskParameters = field(default_factory=RiskParameters)
    initial_capital: float = 1000.0

    def __post_init__(self) -> None:
        if self.initial_capital <= 0:
            raise ValueError("initial_capital must be > 0")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Position:
    direction: Direction
    entry_price: float
    size_fraction: float
    entry_time: int
    take_profit_price: float | None = None
    stop_loss_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "direction": self.direction.value}


@dataclass(frozen=True)
class Trade:
    direction: Direction
    entry_price: float
    exit_price: float
    pnl: float
    entry_time: int
    exit_time: int
    exit_reason: ExitReason

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "direction": self.direction.value, "exit_reason": self.exit_reason.value}


@dataclass(frozen=True)
class EquityPoint:
    time: int
    equity: float
    has_position: bool
    position_direction: Direction | None
    price: float

    def to_dict(self) -> dict[str, Any]:
        return {
            **asdict(self),
            "position_direction": self.position_direction.value if self.position_direction else None,
        }


@dataclass(frozen=True)
class Metrics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_profit_loss: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    long_trades: int = 0
    short_trades: int = 0
    margin_calls: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    final_equity: float = 0.0
    average_profit_per_trade: float = 0.0
    trades_by_exit_reason: dict[str, int] = field(default_factory=dict)
    profit_by_exit_reason: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BacktestResult:
    metrics: Metrics
    trades: list[Trade]
    equity_curve: list[EquityPoint]
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [p.to_dict() for p in self.equity_curve],
            "metadata": self.metadata,
        }
