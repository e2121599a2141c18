"""Live trading loop driving the same signals the backtester uses.

The controller is venue-agnostic: candles come from any object with an async
``fetch_candles`` (``HyperliquidCandleProvider`` satisfies it) and orders go
through an ``ExchangeGateway``. Each tick issues at most one order call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from perpsim.backtesting.engine import Backtester
from perpsim.backtesting.types import BacktestConfig, Candle, Direction, Signal
from perpsim.data.hyperliquid_provider import interval_ms
from perpsim.errors import ControllerHaltedError

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 5


class CandleSource(Protocol):
    async def fetch_candles(self, symbol: str, interval: str, count: int) -> Sequence[Candle]: ...


class ExchangeGateway(Protocol):
    async def open_long(self, symbol: str, size: float) -> Any: ...

    async def open_short(self, symbol: str, size: float) -> Any: ...

    async def close_long(self, symbol: str, size: float) -> Any: ...

    async def close_short(self, symbol: str, size: float) -> Any: ...

    async def set_leverage(self, symbol: str, amount: float, mode: str) -> Any: ...

    async def cancel_order(self, order_id: str) -> Any: ...

    async def get_open_position(self, symbol: str) -> float:
        """Signed position size; positive long, negative short, 0 flat."""
        ...


@dataclass(frozen=True)
class TickOutcome:
    signal: Signal
    action: str | None
    price: float


class LiveTradingController:
    def __init__(
        self,
        gateway: ExchangeGateway,
        candle_source: CandleSource,
        config: BacktestConfig,
        position_size: float,
        leverage_mode: str = "isolated",
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        interval_seconds: float | None = None,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        self.gateway = gateway
        self.candle_source = candle_source
        self.config = config
        self.position_size = position_size
        self.leverage_mode = leverage_mode
        self.max_consecutive_errors = max_consecutive_errors
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else interval_ms(config.timeframe) / 1000
        )
        self.error_backoff_seconds = error_backoff_seconds

        backtester = Backtester(config)
        self.signal = backtester.signal
        self.window_size = backtester.lookback + 1
        self.take_profit_price: float | None = None
        self.consecutive_errors = 0

    async def start(self) -> None:
        await self.gateway.set_leverage(self.config.symbol, self.config.risk.leverage, self.leverage_mode)
        logger.info(
            "Controller started for %s/%s (strategy=%s, leverage=%sx %s, size=%s)",
            self.config.symbol,
            self.config.timeframe,
            self.signal.name,
            self.config.risk.leverage,
            self.leverage_mode,
            self.position_size,
        )

    async def _current_direction(self) -> Direction | None:
        try:
            size = await self.gateway.get_open_position(self.config.symbol)
        except Exception as exc:
            logger.error("Error fetching open position, assuming flat: %s", exc)
            return None
        if size > 0:
            return Direction.LONG
        if size < 0:
            return Direction.SHORT
        return None

    async def tick(self) -> TickOutcome:
        symbol = self.config.symbol
        candles = list(await self.candle_source.fetch_candles(symbol, self.config.timeframe, self.window_size))
        if not candles:
            raise ValueError(f"No market data received for {symbol}")
        window = candles[-self.window_size :]
        price = window[-1].close

        direction = await self._current_direction()
        if direction is None:
            self.take_profit_price = None

        tp = self.take_profit_price
        if direction is not None and tp is not None:
            hit = price >= tp if direction is Direction.LONG else price <= tp
            if hit:
                logger.info("Take profit %.6f reached at %.6f, closing %s", tp, price, direction.value)
                await self._close(direction)
                return TickOutcome(Signal.NONE, "take_profit", price)

        decision = self.signal.evaluate(window, self.config.strategy_params, direction)
        action = None
        if decision.signal is Signal.LONG and direction is None:
            logger.info("Opening long %s at %.6f", symbol, price)
            await self.gateway.open_long(symbol, self.position_size)
            self.take_profit_price = decision.take_profit_price
            action = "open_long"
        elif decision.signal is Signal.SHORT and direction is None:
            logger.info("Opening short %s at %.6f", symbol, price)
            await self.gateway.open_short(symbol, self.position_size)
            self.take_profit_price = decision.take_profit_price
            action = "open_short"
        elif decision.signal is Signal.CLOSE_LONG and direction is Direction.LONG:
            await self._close(direction)
            action = "close_long"
        elif decision.signal is Signal.CLOSE_SHORT and direction is Direction.SHORT:
            await self._close(direction)
            action = "close_short"

        return TickOutcome(decision.signal, action, price)

    async def _close(self, direction: Direction) -> None:
        symbol = self.config.symbol
        logger.info("Closing %s %s", direction.value, symbol)
        if direction is Direction.LONG:
            await self.gateway.close_long(symbol, self.position_size)
        else:
            await self.gateway.close_short(symbol, self.position_size)
        self.take_profit_price = None

    async def run(self, max_ticks: int | None = None) -> None:
        """Tick every interval until *max_ticks* ticks ran or the error budget is spent."""
        await self.start()
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            try:
                outcome = await self.tick()
            except Exception as exc:
                self.consecutive_errors += 1
                logger.error(
                    "Tick failed (%d/%d): %s",
                    self.consecutive_errors,
                    self.max_consecutive_errors,
                    exc,
                )
                if self.consecutive_errors >= self.max_consecutive_errors:
                    logger.error("Too many consecutive errors, stopping controller")
                    raise ControllerHaltedError(
                        f"Stopped after {self.consecutive_errors} consecutive failed ticks"
                    ) from exc
                await asyncio.sleep(self.error_backoff_seconds)
            else:
                self.consecutive_errors = 0
                logger.debug("Tick %d: signal=%s action=%s", ticks, outcome.signal.value, outcome.action)

            if max_ticks is None or ticks < max_ticks:
                await asyncio.sleep(self.interval_seconds)
