"""Command-line entry points.

    perpsim backtest --symbol BTC --timeframe 15m [--file candles.json] [--risk-managed --kelly]
    perpsim fetch --symbol BTC --timeframe 15m --count 1000
    perpsim import --symbol BTC --timeframe 15m [--file candles.json]
    perpsim dataset --symbol BTC --timeframe 15m --space space.json --samples 200 --out data.csv
    perpsim serve [--host 0.0.0.0] [--port 8000]
    perpsim prune-jobs --days 30
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
from pathlib import Path

from config import settings
from perpsim.backtesting.dataset import DatasetBuilder, load_optimized_parameters
from perpsim.backtesting.engine import Backtester
from perpsim.backtesting.optimization import generate_random, validate_space
from perpsim.backtesting.risk import RiskAwareBacktester, RiskManagementSettings
from perpsim.backtesting.service import parse_param_space
from perpsim.backtesting.types import BacktestConfig, Candle, RiskParameters
from perpsim.data.candle_files import candle_file_path, load_candles_json, save_candles_json
from perpsim.data.database import initialize_database, prune_jobs
from perpsim.data.historical_store import HistoricalDataStore
from perpsim.data.hyperliquid_provider import HyperliquidCandleProvider
from perpsim.logging_setup import configure_logging

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="perpsim")
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="command", required=True)

    def market_args(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument("--symbol", default=settings.default_symbol)
        cmd.add_argument("--timeframe", default=settings.default_timeframe)
        cmd.add_argument("--file", type=Path, default=None, help="Candle JSON file; defaults to the data dir layout")

    bt = sub.add_parser("backtest", help="Run one backtest over a candle file")
    market_args(bt)
    bt.add_argument("--strategy", default="bbrsi_v1")
    bt.add_argument("--leverage", type=float, default=RiskParameters.leverage)
    bt.add_argument("--position-size", type=float, default=RiskParameters.position_size_fraction)
    bt.add_argument("--params", type=Path, default=None, help="Optimized parameter JSON to overlay")
    bt.add_argument("--out", type=Path, default=None, help="Write the full result JSON here")
    risk = bt.add_argument_group("risk management")
    risk.add_argument("--risk-managed", action="store_true", help="Size entries with the risk manager and attach stop-losses")
    risk.add_argument("--max-risk-per-trade", type=float, default=RiskManagementSettings.max_risk_per_trade)
    risk.add_argument("--max-drawdown", type=float, default=RiskManagementSettings.max_drawdown)
    risk.add_argument("--kelly", action="store_true")
    risk.add_argument("--anti-martingale", action="store_true")
    risk.add_argument("--volatility-sizing", action="store_true")
    risk.add_argument("--no-stop-loss", action="store_true")

    fetch = sub.add_parser("fetch", help="Download candles from Hyperliquid into the data dir and the candle store")
    market_args(fetch)
    fetch.add_argument("--count", type=int, default=1000)
    fetch.add_argument("--no-store", action="store_true", help="Only write the JSON file")

    imp = sub.add_parser("import", help="Load a candle JSON file into the candle store")
    market_args(imp)

    ds = sub.add_parser("dataset", help="Write a parameter/feature/metric CSV for offline search")
    market_args(ds)
    ds.add_argument("--strategy", default="bbrsi_v1")
    ds.add_argument("--space", type=Path, required=True, help="JSON parameter space")
    ds.add_argument("--samples", type=int, default=100)
    ds.add_argument("--seed", type=int, default=None)
    ds.add_argument("--out", type=Path, required=True)

    srv = sub.add_parser("serve", help="Run the HTTP API")
    srv.add_argument("--host", default=None)
    srv.add_argument("--port", type=int, default=None)

    prune = sub.add_parser("prune-jobs", help="Delete finished jobs older than --days")
    prune.add_argument("--days", type=float, required=True)

    return p.parse_args(argv)


def _candles_path(args: argparse.Namespace) -> Path:
    return args.file or candle_file_path(settings.data_dir, args.symbol, args.timeframe)


def _cmd_backtest(args: argparse.Namespace) -> None:
    config = BacktestConfig(
        symbol=args.symbol,
        timeframe=args.timeframe,
        strategy_name=args.strategy,
        risk=RiskParameters(leverage=args.leverage, position_size_fraction=args.position_size),
    )
    if args.params:
        config = load_optimized_parameters(args.params, config)
    if args.risk_managed:
        risk_settings = RiskManagementSettings(
            max_risk_per_trade=args.max_risk_per_trade,
            max_drawdown=args.max_drawdown,
            use_kelly_criterion=args.kelly,
            use_anti_martingale=args.anti_martingale,
            use_volatility_adjustment=args.volatility_sizing,
            use_stop_loss=not args.no_stop_loss,
        )
        backtester = RiskAwareBacktester(config, risk_settings)
    else:
        backtester = Backtester(config)
    result = backtester.run(load_candles_json(_candles_path(args)))
    print(json.dumps(result.metrics.to_dict(), indent=2))
    if args.out:
        args.out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
        logger.info("Wrote result to %s", args.out)


def _cmd_fetch(args: argparse.Namespace) -> None:
    provider = HyperliquidCandleProvider(base_url=settings.hyperliquid_url)
    candles = asyncio.run(provider.fetch_candles(args.symbol, args.timeframe, args.count))
    save_candles_json(_candles_path(args), candles)
    if not args.no_store:
        _store(args.symbol, args.timeframe, candles)


def _cmd_import(args: argparse.Namespace) -> None:
    path = _candles_path(args)
    candles = load_candles_json(path)
    logger.info("Importing %d candles from %s", len(candles), path)
    _store(args.symbol, args.timeframe, candles)


def _store(symbol: str, timeframe: str, candles: list[Candle]) -> None:
    initialize_database()
    store = HistoricalDataStore()
    inserted = store.store_candles(symbol, timeframe, candles)
    print(f"{symbol}/{timeframe}: {inserted} new, {store.count_candles(symbol, timeframe)} stored")


def _cmd_dataset(args: argparse.Namespace) -> None:
    space = parse_param_space(json.loads(args.space.read_text(encoding="utf-8")))
    validate_space(space)
    combinations = generate_random(space, args.samples, random.Random(args.seed))
    config = BacktestConfig(symbol=args.symbol, timeframe=args.timeframe, strategy_name=args.strategy)
    builder = DatasetBuilder(config, load_candles_json(_candles_path(args)), sorted(space))
    builder.build(combinations, args.out)


def _cmd_serve(args: argparse.Namespace) -> None:
    from main import serve

    serve(host=args.host, port=args.port)


def _cmd_prune_jobs(args: argparse.Namespace) -> None:
    initialize_database()
    removed = prune_jobs(int(args.days * 86400))
    print(f"Removed {removed} job(s)")


COMMANDS = {
    "backtest": _cmd_backtest,
    "fetch": _cmd_fetch,
    "import": _cmd_import,
    "dataset": _cmd_dataset,
    "serve": _cmd_serve,
    "prune-jobs": _cmd_prune_jobs,
}


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    configure_logging(args.log_level)
    COMMANDS[args.command](args)


if __name__ == "__main__":
    main()
