from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from perpsim.data.hyperliquid_provider import HyperliquidCandleProvider, interval_ms

END_MS = 1_700_000_000_000


def _snapshot(count: int, step: int = 60_000) -> list[dict]:
    # Newest first, numbers as strings, as the exchange sends them.
    rows = []
    for i in range(count):
        t = END_MS - (i + 1) * step
        rows.append({"t": t, "T": t + step - 1, "s": "BTC", "i": "1m", "o": "100", "h": "101", "l": "99", "c": str(100 + i), "v": "5", "n": 3})
    return rows


def _provider(handler) -> HyperliquidCandleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HyperliquidCandleProvider(base_url="https://hl.test", client=client, backoff_seconds=0)


def test_fetch_candles_posts_candle_snapshot_request() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_snapshot(5))

    candles = asyncio.run(_provider(handler).fetch_candles("BTC", "1m", 5, end_time=END_MS))

    assert str(requests[0].url) == "https://hl.test/info"
    body = json.loads(requests[0].content)
    assert body == {
        "type": "candleSnapshot",
        "req": {"coin": "BTC", "interval": "1m", "startTime": END_MS - 5 * 60_000, "endTime": END_MS},
    }
    assert [c.open_time for c in candles] == sorted(c.open_time for c in candles)
    assert candles[-1].close == 100.0
    assert len(candles) == 5


def test_fetch_candles_trims_to_requested_count() -> None:
    provider = _provider(lambda request: httpx.Response(200, json=_snapshot(8)))
    candles = asyncio.run(provider.fetch_candles("BTC", "1m", 3, end_time=END_MS))
    assert len(candles) == 3
    assert candles[-1].open_time == END_MS - 60_000


def test_rate_limited_request_is_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429)
        return httpx.Response(200, json=_snapshot(2))

    candles = asyncio.run(_provider(handler).fetch_candles("BTC", "1m", 2, end_time=END_MS))
    assert calls["n"] == 2
    assert len(candles) == 2


def test_persistent_server_error_raises_after_all_attempts() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(500)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_provider(handler).fetch_candles("BTC", "1m", 2, end_time=END_MS))
    assert calls["n"] == 3


def test_unsupported_interval_is_rejected() -> None:
    assert interval_ms("4h") == 4 * 60 * 60_000
    with pytest.raises(ValueError):
        asyncio.run(_provider(lambda r: httpx.Response(200, json=[])).fetch_candles("BTC", "2h", 10))
