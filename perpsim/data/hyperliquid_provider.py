from __future__ import annotations

import asyncio
import logging
import time

import httpx

from perpsim.backtesting.types import Candle

logger = logging.getLogger(__name__)

INTERVAL_MS = {
    "1m": 60_000,
    "3m": 3 * 60_000,
    "5m": 5 * 60_000,
    "10m": 10 * 60_000,
    "15m": 15 * 60_000,
    "30m": 30 * 60_000,
    "1h": 60 * 60_000,
    "4h": 4 * 60 * 60_000,
    "1d": 24 * 60 * 60_000,
}

_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


def interval_ms(interval: str) -> int:
    if interval not in INTERVAL_MS:
        raise ValueError(f"Unsupported interval: {interval}; expected one of {sorted(INTERVAL_MS)}")
    return INTERVAL_MS[interval]


class HyperliquidCandleProvider:
    """Public Hyperliquid ``candleSnapshot`` market data for perpetuals."""

    name = "hyperliquid"

    def __init__(
        self,
        base_url: str = "https://api.hyperliquid.xyz",
        client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout

    async def fetch_candles(
        self,
        symbol: str,
        interval: str,
        count: int,
        end_time: int | None = None,
    ) -> list[Candle]:
        """Return up to *count* candles ending at *end_time* (epoch ms), ascending."""
        step = interval_ms(interval)
        if end_time is None:
            end_time = int(time.time() * 1000)
        payload = {
            "type": "candleSnapshot",
            "req": {
                "coin": symbol,
                "interval": interval,
                "startTime": end_time - count * step,
                "endTime": end_time,
            },
        }

        logger.info("Fetching %d %s %s candles from Hyperliquid", count, symbol, interval)
        rows = await self._post_with_retry(f"{self.base_url}/info", payload, symbol)
        candles = sorted((Candle.from_mapping(row) for row in rows), key=lambda c: c.open_time)
        return candles[-count:] if count > 0 else []

    async def _post_with_retry(self, url: str, payload: dict, symbol: str) -> list[dict]:
        last_exc: Exception = RuntimeError(f"Hyperliquid fetch failed for {symbol}")
        for attempt in range(self.max_attempts):
            wait = self.backoff_seconds * 2.0 ** attempt
            try:
                response = await self._post(url, payload)
                if response.status_code == 429:
                    logger.warning("Hyperliquid 429 for %s, waiting %.1fs", symbol, wait)
                    last_exc = httpx.HTTPStatusError(
                        "429 Too Many Requests", request=response.request, response=response
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                data = response.json()
                if not isinstance(data, list):
                    raise ValueError(f"Unexpected candleSnapshot payload for {symbol}: {data!r}")
                return data
            except httpx.HTTPStatusError as exc:
                logger.warning("Hyperliquid HTTP %s (attempt %d): %s", exc.response.status_code, attempt + 1, exc)
                last_exc = exc
            except httpx.RequestError as exc:
                logger.warning("Hyperliquid request error (attempt %d): %s", attempt + 1, exc)
                last_exc = exc
            if attempt < self.max_attempts - 1:
                await asyncio.sleep(wait)
        raise last_exc

    async def _post(self, url: str, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=_HEADERS)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await client.post(url, json=payload, headers=_HEADERS)
