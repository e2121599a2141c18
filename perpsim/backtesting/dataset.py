"""File contract with the external parameter-search oracle.

The oracle is an offline training program that is not part of this package.
It consumes a CSV dataset with one row per backtest, laid out as

    <parameter columns> , <indicator feature columns> , <target metric columns>

and answers with a JSON file of optimized parameters, named
``<MARKET>_<TIMEFRAME>_<MODEL>_optimized_params.json``. This module writes the
former and reads the latter; nothing here trains or predicts.
"""
from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from statistics import pstdev
from typing import Any, Mapping, Sequence

from perpsim.backtesting.engine import Backtester, parse_candles
from perpsim.backtesting.optimization import apply_parameters
from perpsim.backtesting.types import BacktestConfig, Candle, RiskParameters, StrategyParameters
from perpsim.signals.indicators import adx, atr, bollinger, ema, rsi

logger = logging.getLogger(__name__)

TARGET_METRICS = ("total_profit_loss", "sharpe_ratio", "max_drawdown", "win_rate", "profit_factor")

FEATURE_COLUMNS = (
    "rsi_value",
    "rsi_slope",
    "bb_width",
    "bb_percent_b",
    "price_to_upper",
    "price_to_lower",
    "adx_value",
    "ema_fast",
    "ema_slow",
    "ema_ratio",
    "atr_value",
    "atr_percent",
    "last_return",
    "window_return",
    "volatility",
)

ATR_PERIOD = 14
MODEL_FILE_SUFFIX = "_optimized_params.json"

# Parameter names used by the oracle's JSON files.
PARAMETER_ALIASES = {
    "rsiPeriod": "rsi_period",
    "rsiOverbought": "rsi_overbought",
    "rsiOversold": "rsi_oversold",
    "bbPeriod": "bb_period",
    "bbStdDev": "bb_std_dev",
    "adxPeriod": "adx_period",
    "adxThreshold": "adx_threshold",
    "profitTarget": "profit_target_percent",
    "shortEmaPeriod": "ema_short_period",
    "longEmaPeriod": "ema_long_period",
    "positionSize": "position_size_fraction",
    "tradingFee": "trading_fee_rate",
}


def indicator_features(window: Sequence[Candle], params: StrategyParameters) -> dict[str, float]:
    """Indicator features of the last candle of *window*, using *params* periods."""
    price = window[-1].close
    bands = bollinger(window, params.bb_period, params.bb_std_dev)
    band_range = bands.upper - bands.lower
    rsi_now = rsi(window, params.rsi_period)
    rsi_prev = rsi(window[:-1], params.rsi_period)
    fast = ema(window, params.ema_short_period)[-1]
    slow = ema(window, params.ema_long_period)[-1]
    atr_value = atr(window, ATR_PERIOD)
    closes = [c.close for c in window]
    returns = [(cur - prev) / prev for prev, cur in zip(closes, closes[1:]) if prev]

    return {
        "rsi_value": rsi_now,
        "rsi_slope": rsi_now - rsi_prev,
        "bb_width": band_range / bands.middle if bands.middle else 0.0,
        "bb_percent_b": (price - bands.lower) / band_range if band_range else 0.5,
        "price_to_upper": (bands.upper - price) / price if price else 0.0,
        "price_to_lower": (price - bands.lower) / price if price else 0.0,
        "adx_value": adx(window, params.adx_period),
        "ema_fast": fast,
        "ema_slow": slow,
        "ema_ratio": fast / slow if slow else 0.0,
        "atr_value": atr_value,
        "atr_percent": atr_value / price if price else 0.0,
        "last_return": returns[-1] if returns else 0.0,
        "window_return": (closes[-1] - closes[0]) / closes[0] if closes[0] else 0.0,
        "volatility": pstdev(returns) if len(returns) > 1 else 0.0,
    }


class DatasetBuilder:
    """Runs one backtest per combination and appends a dataset row for each."""

    def __init__(
        self,
        base_config: BacktestConfig,
        candles: Sequence[Candle | Mapping[str, Any]],
        parameter_names: Sequence[str],
    ) -> None:
        self.base_config = base_config
        self.candles = parse_candles(candles)
        self.parameter_names = list(parameter_names)

    @property
    def header(self) -> list[str]:
        return [*self.parameter_names, *FEATURE_COLUMNS, *TARGET_METRICS]

    def build(self, combinations: Sequence[Mapping[str, Any]], path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(self.header)
            for idx, params in enumerate(combinations):
                try:
                    row = self._row(params)
                except Exception as exc:
                    logger.error("Dataset row %d failed for %s: %s", idx, dict(params), exc)
                    continue
                writer.writerow(row)
                written += 1

        logger.info("Wrote %d/%d dataset rows to %s", written, len(combinations), path)
        return path

    def _row(self, params: Mapping[str, Any]) -> list[Any]:
        config = apply_parameters(self.base_config, params)
        result = Backtester(config).run(self.candles)
        features = indicator_features(self.candles, config.strategy_params)
        metrics = result.metrics.to_dict()
        return [
            *(params.get(name, "") for name in self.parameter_names),
            *(features[name] for name in FEATURE_COLUMNS),
            *(metrics[name] for name in TARGET_METRICS),
        ]


def load_optimized_parameters(path: str | Path, base_config: BacktestConfig) -> BacktestConfig:
    """Overlay an oracle parameter file onto *base_config*.

    Accepts ``{"parameters": {...}}``, ``{"optimized_parameters": {...}}`` or a
    flat mapping. Oracle-style camelCase names are translated; keys that are
    neither strategy nor risk parameters are ignored.
    """
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Optimized parameter file {path} must hold a JSON object")
    raw = payload.get("parameters") or payload.get("optimized_parameters") or payload

    known = StrategyParameters.field_names() | RiskParameters.field_names()
    params: dict[str, Any] = {}
    for key, value in raw.items():
        name = PARAMETER_ALIASES.get(key, key)
        if name in known:
            params[name] = value
        else:
            logger.warning("Ignoring unknown optimized parameter '%s' in %s", key, path)

    logger.info("Loaded %d optimized parameters from %s", len(params), path)
    return apply_parameters(base_config, params)


def list_optimized_models(directory: str | Path) -> list[dict[str, str]]:
    directory = Path(directory)
    if not directory.is_dir():
        return []
    models = []
    for file in sorted(directory.glob(f"*{MODEL_FILE_SUFFIX}")):
        name = file.name[: -len(MODEL_FILE_SUFFIX)]
        parts = name.split("_")
        if len(parts) < 3:
            continue
        models.append(
            {"name": name, "path": str(file), "market": parts[0], "timeframe": parts[1], "model_type": parts[2]}
        )
    return models
