from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from rangewatch.models.market import Candle
from rangewatch.providers.base import DataError, MarketDataProvider, RateLimitedError

log = logging.getLogger("binance_provider")

# Binance caps a single klines request at this many rows.
KLINES_MAX_LIMIT = 1000

RATE_LIMIT_STATUSES = (418, 429)


class BinanceProvider(MarketDataProvider):
    """
    Binance spot REST provider.

    REST:
    - /api/v3/ticker/price   batch latest prices
    - /api/v3/klines         candles (paged backwards past 1000 rows)

    HTTP 429/418 raise RateLimitedError with the Retry-After header (seconds)
    when present; other HTTP failures raise httpx.HTTPStatusError.
    """

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    # -------------------------
    # Public interface used by the app
    # -------------------------
    async def fetch_prices(self, symbols: List[str]) -> Dict[str, str]:
        """
        Returns {"BTCUSDT": "67123.45000000", ...} for the requested symbols.
        """
        if not symbols:
            return {}

        params = {"symbols": json.dumps(symbols, separators=(",", ":"))}
        data = await self._get_json("/api/v3/ticker/price", params)
        if not isinstance(data, list):
            raise DataError(f"Unexpected ticker payload type={type(data).__name__}")

        out: Dict[str, str] = {}
        for row in data:
            if not isinstance(row, dict) or "symbol" not in row or "price" not in row:
                raise DataError(f"Malformed ticker row: {row!r}")
            out[str(row["symbol"])] = str(row["price"])
        return out

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        """
        Returns the most recent `limit` candles, oldest first.
        The last candle is usually the one still forming.
        """
        if limit <= 0:
            return []

        candles: List[Candle] = []
        end_time: Optional[int] = None

        while len(candles) < limit:
            page_limit = min(KLINES_MAX_LIMIT, limit - len(candles))
            params: Dict[str, Any] = {"symbol": symbol, "interval": interval, "limit": page_limit}
            if end_time is not None:
                params["endTime"] = end_time

            data = await self._get_json("/api/v3/klines", params)
            if not isinstance(data, list):
                raise DataError(f"Unexpected klines payload symbol={symbol} type={type(data).__name__}")

            page = [self._parse_kline(symbol, row) for row in data]
            if not page:
                break

            candles = page + candles
            if len(page) < page_limit:
                break
            end_time = page[0].open_time - 1

        return candles

    async def fetch_candle_closes(self, symbols: List[str], interval: str) -> Dict[str, str]:
        """
        Close of the last completed `interval` candle per symbol.
        Symbols whose fetch fails are logged and left out.
        """
        results = await asyncio.gather(
            *(self.fetch_candles(symbol, interval, 2) for symbol in symbols),
            return_exceptions=True,
        )

        closes: Dict[str, str] = {}
        for symbol, result in zip(symbols, results):
            if isinstance(result, RateLimitedError):
                raise result
            if isinstance(result, BaseException):
                log.warning("Close fetch failed symbol=%s interval=%s error=%r", symbol, interval, result)
                continue
            if len(result) >= 2:
                closes[symbol] = result[-2].close
        return closes

    # -------------------------
    # HTTP
    # -------------------------
    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        resp = await self._client.get(path, params=params)

        if resp.status_code in RATE_LIMIT_STATUSES:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            log.warning(
                "Binance rate limit status=%s path=%s retry_after=%s",
                resp.status_code,
                path,
                retry_after,
            )
            raise RateLimitedError(resp.status_code, retry_after)

        resp.raise_for_status()

        try:
            return resp.json()
        except ValueError as e:
            raise DataError(f"Invalid JSON from {path}") from e

    def _parse_kline(self, symbol: str, row: Any) -> Candle:
        """
        Binance kline row:
          [open_time, open, high, low, close, volume, close_time, ...]
        """
        if not isinstance(row, list) or len(row) < 6:
            raise DataError(f"Malformed kline row symbol={symbol}: {row!r}")

        open_time, o, h, l, c, v = row[:6]
        if any(x is None for x in (open_time, o, h, l, c, v)):
            raise DataError(f"Kline row missing fields symbol={symbol}: {row!r}")

        try:
            for value in (o, h, l, c, v):
                float(value)
            return Candle(
                open_time=int(open_time),
                open=str(o),
                high=str(h),
                low=str(l),
                close=str(c),
                volume=str(v),
            )
        except (TypeError, ValueError) as e:
            raise DataError(f"Non-numeric kline row symbol={symbol}: {row!r}") from e


def _parse_retry_after(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None
