from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from rangewatch.models.market import Candle


class RateLimitedError(Exception):
    """
    Upstream throttled (HTTP 429) or banned (HTTP 418) us.

    retry_after: seconds the upstream asked us to wait, when it said so.
    """

    def __init__(self, status_code: int, retry_after: Optional[int] = None) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        reason = "banned" if status_code == 418 else "rate limited"
        super().__init__(f"Upstream {reason} (HTTP {status_code})")


class DataError(ValueError):
    """Upstream payload is malformed or a candle row is missing fields."""


class MarketDataProvider(ABC):
    """
    Provider contract (interface).

    Any provider must implement:
    - fetch_prices(): latest trade price per symbol (batch)
    - fetch_candles(): most recent `limit` klines, oldest first; the last
      row may be the candle that is still forming
    - fetch_candle_closes(): close of the last completed candle per symbol
    """

    @abstractmethod
    async def fetch_prices(self, symbols: List[str]) -> Dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_candle_closes(self, symbols: List[str], interval: str) -> Dict[str, str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None
