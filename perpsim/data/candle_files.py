"""JSON candle files laid out as ``<data_dir>/<SYMBOL>/<SYMBOL>-<timeframe>.json``."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Sequence

from perpsim.backtesting.types import Candle
from perpsim.errors import MalformedCandleError

logger = logging.getLogger(__name__)


def candle_file_path(data_dir: str | Path, symbol: str, timeframe: str) -> Path:
    return Path(data_dir) / symbol / f"{symbol}-{timeframe}.json"


def load_candles_json(path: str | Path) -> list[Candle]:
    """Load a JSON array of candles, sorted ascending by open_time.

    Both long keys (``open_time``, ``close``...) and the exchange short keys
    (``t``, ``c``...) are accepted.
    """
    path = Path(path)
    logger.info("Loading candles from %s", path)
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise MalformedCandleError(f"{path} must contain a JSON array of candles")

    candles = sorted((Candle.from_mapping(row) for row in payload), key=lambda c: c.open_time)
    logger.info("Loaded %d candles from %s", len(candles), path)
    return candles


def save_candles_json(path: str | Path, candles: Sequence[Candle]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([c.to_dict() for c in candles], indent=2), encoding="utf-8")
    logger.info("Saved %d candles to %s", len(candles), path)
    return path
