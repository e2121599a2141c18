from __future__ import annotations


class PerpsimError(Exception):
    """Base class for simulation errors."""


class InsufficientHistoryError(PerpsimError, ValueError):
    """Raised when a window is too short for the requested indicator period."""

    def __init__(self, required: int, available: int, what: str = "window") -> None:
        self.required = required
        self.available = available
        super().__init__(f"{what} needs at least {required} candles, got {available}")


class MalformedCandleError(PerpsimError, ValueError):
    """Raised when a candle mapping is missing a field or holds a non-numeric value."""


class JobNotFoundError(PerpsimError, LookupError):
    """Raised when a stored backtest job id does not exist."""


class ControllerHaltedError(PerpsimError, RuntimeError):
    """Raised when the live controller stops after too many consecutive failed ticks."""
