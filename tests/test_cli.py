from __future__ import annotations

import json

import pytest

from conftest import make_candles, wave_closes
from perpsim import cli
from perpsim.data.candle_files import load_candles_json, save_candles_json
from perpsim.data.historical_store import HistoricalDataStore


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)


def test_import_loads_a_candle_file_into_the_store(database, tmp_path, capsys) -> None:
    path = tmp_path / "ETH-1h.json"
    save_candles_json(path, make_candles([100.0 + i for i in range(60)]))

    cli.main(["import", "--symbol", "ETH", "--timeframe", "1h", "--file", str(path)])
    cli.main(["import", "--symbol", "ETH", "--timeframe", "1h", "--file", str(path)])

    assert HistoricalDataStore().count_candles("ETH", "1h") == 60
    out = capsys.readouterr().out.splitlines()
    assert out == ["ETH/1h: 60 new, 60 stored", "ETH/1h: 0 new, 60 stored"]


def test_fetch_writes_the_file_and_the_store(database, tmp_path, monkeypatch) -> None:
    candles = make_candles(wave_closes(80))
    requests = []

    class FakeProvider:
        def __init__(self, base_url: str) -> None:
            self.base_url = base_url

        async def fetch_candles(self, symbol, interval, count):
            requests.append((symbol, interval, count))
            return candles[-count:]

    monkeypatch.setattr(cli, "HyperliquidCandleProvider", FakeProvider)
    path = tmp_path / "SOL-5m.json"

    cli.main(["fetch", "--symbol", "SOL", "--timeframe", "5m", "--count", "70", "--file", str(path)])

    assert requests == [("SOL", "5m", 70)]
    assert load_candles_json(path) == candles[-70:]
    stored = HistoricalDataStore().get_candles("SOL", "5m", 70)
    assert stored == candles[-70:]


def test_fetch_can_skip_the_store(database, tmp_path, monkeypatch) -> None:
    class FakeProvider:
        def __init__(self, base_url: str) -> None:
            pass

        async def fetch_candles(self, symbol, interval, count):
            return make_candles([1.0] * count)

    monkeypatch.setattr(cli, "HyperliquidCandleProvider", FakeProvider)
    path = tmp_path / "c.json"

    cli.main(["fetch", "--symbol", "SOL", "--timeframe", "5m", "--count", "5", "--file", str(path), "--no-store"])

    assert len(json.loads(path.read_text())) == 5
    assert HistoricalDataStore().count_candles("SOL", "5m") == 0


def test_backtest_prints_metrics_for_a_candle_file(tmp_path, capsys) -> None:
    path = tmp_path / "BTC-15m.json"
    save_candles_json(path, make_candles(wave_closes(200)))

    cli.main(["backtest", "--file", str(path), "--leverage", "5", "--out", str(tmp_path / "result.json")])

    metrics = json.loads(capsys.readouterr().out)
    assert metrics["final_equity"] > 0
    result = json.loads((tmp_path / "result.json").read_text())
    assert len(result["equity_curve"]) == 150


def test_backtest_can_run_risk_managed(tmp_path, capsys) -> None:
    path = tmp_path / "BTC-15m.json"
    save_candles_json(path, make_candles(wave_closes(200)))

    cli.main(
        [
            "backtest",
            "--file",
            str(path),
            "--risk-managed",
            "--max-risk-per-trade",
            "0.05",
            "--anti-martingale",
            "--out",
            str(tmp_path / "result.json"),
        ]
    )

    assert json.loads(capsys.readouterr().out)["final_equity"] > 0
    result = json.loads((tmp_path / "result.json").read_text())
    settings = result["metadata"]["risk_management"]["settings"]
    assert settings["max_risk_per_trade"] == 0.05
    assert settings["use_anti_martingale"] is True
    assert settings["use_kelly_criterion"] is False
