from __future__ import annotations

import math
import os
import random
import sys
import tempfile
from pathlib import Path
from typing import Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

# Settings are read once at import time, so the test database has to be
# configured before anything imports ``config``.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="perpsim-tests-"))
os.environ["PERPSIM_DB_PATH"] = str(_TMP_DIR / "perpsim-test.db")
os.environ["PERPSIM_DATA_DIR"] = str(_TMP_DIR / "data")
os.environ["PERPSIM_API_KEY"] = ""

from perpsim.backtesting.types import Candle, Direction, Signal, StrategyParameters  # noqa: E402
from perpsim.signals.base_signal import BaseSignal, SignalDecision  # noqa: E402

START_MS = 1_700_000_000_000
STEP_MS = 15 * 60_000


def make_candles(closes: Sequence[float], start: int = START_MS, step: int = STEP_MS) -> list[Candle]:
    """Candles whose open is the previous close and whose range hugs the body."""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        open_ = prev
        candles.append(
            Candle(
                open_time=start + i * step,
                close_time=start + (i + 1) * step - 1,
                open=open_,
                high=max(open_, close) * 1.001,
                low=min(open_, close) * 0.999,
                close=close,
                volume=1000.0 + i,
            )
        )
        prev = close
    return candles


def wave_closes(count: int = 400, seed: int = 7) -> list[float]:
    rng = random.Random(seed)
    return [100 + 8 * math.sin(i / 6) + rng.uniform(-1.5, 1.5) for i in range(count)]


class ScriptedSignal(BaseSignal):
    """Emits pre-arranged decisions keyed by the open_time of the window's last candle."""

    name = "scripted"

    def __init__(self, script: dict[int, SignalDecision] | None = None) -> None:
        self.script = script or {}
        self.seen: dict[int, Direction | None] = {}

    def periods(self, params: StrategyParameters) -> list[int]:
        return [1]

    def evaluate(self, window, params, current_direction) -> SignalDecision:
        open_time = window[-1].open_time
        self.seen[open_time] = current_direction
        return self.script.get(open_time, SignalDecision(Signal.NONE))


@pytest.fixture
def wave_candles() -> list[Candle]:
    return make_candles(wave_closes())


@pytest.fixture
def database():
    from perpsim.data.database import Base, engine, initialize_database

    initialize_database()
    yield engine
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
