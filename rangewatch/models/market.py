from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Candle:
    """
    Candle (kline) = one OHLCV record for a fixed time bucket.

    open_time: bucket start in epoch milliseconds (unique within a buffer)
    open/high/low/close/volume: decimal strings exactly as the upstream sent them

    Prices stay strings so reported highs/lows never drift through float formatting.
    """
    open_time: int
    open: str
    high: str
    low: str
    close: str
    volume: str

    @property
    def o(self) -> float:
        return float(self.open)

    @property
    def h(self) -> float:
        return float(self.high)

    @property
    def l(self) -> float:
        return float(self.low)

    @property
    def c(self) -> float:
        return float(self.close)


@dataclass(frozen=True)
class WindowRange:
    """
    Statistics for one window size over the whole candle buffer.

    range/high/low: the largest high-low spread of any window position, with
      high/low as the original strings of the candles that set them
    wma: recency-weighted average of every position's range
    avg_abs_change/wma_abs_change/max_abs_change: |close_last - open_first| per position
    max_volatility/wma_volatility: volatility per position (see stats.engine)
    """
    window_size: int
    range: float
    high: str
    low: str
    wma: float
    avg_abs_change: float
    wma_abs_change: float
    max_abs_change: float
    max_volatility: float
    wma_volatility: float

    @classmethod
    def placeholder(cls, window_size: int) -> "WindowRange":
        """Record emitted when the buffer is shorter than the window."""
        return cls(
            window_size=window_size,
            range=0.0,
            high="",
            low="",
            wma=0.0,
            avg_abs_change=0.0,
            wma_abs_change=0.0,
            max_abs_change=0.0,
            max_volatility=0.0,
            wma_volatility=0.0,
        )


@dataclass(frozen=True)
class CacheEntry:
    high: float
    low: float
    range: float
    volatility: float
