from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Dict, Optional

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS

# Candle resolutions the dashboard buffers, in milliseconds.
RESOLUTION_MS: Dict[str, int] = {
    "1m": MINUTE_MS,
    "1h": HOUR_MS,
}

# Hourly candles are used while more than this many minutes remain in the interval.
HOURLY_MODE_MIN_MINUTES = 60


@dataclass(frozen=True)
class TimeframeConfig:
    """
    One selectable dashboard timeframe.

    interval_minutes: length of the interval whose close we are watching
    max_window_size: largest window (in 1m candles) the stats engine computes
    candle_interval: upstream kline interval used for the reference close
    dynamic_resolution: whether the candle resolution switches to 1h far from expiry
    """
    name: str
    label: str
    interval_minutes: int
    max_window_size: int
    candle_interval: str
    dynamic_resolution: bool = False
    hourly_max_window_size: Optional[int] = None


TIMEFRAME_CONFIGS: Dict[str, TimeframeConfig] = {
    "5m": TimeframeConfig("5m", "5m", 5, 5, "5m"),
    "15m": TimeframeConfig("15m", "15m", 15, 15, "15m"),
    "1h": TimeframeConfig("1h", "1H", 60, 60, "1h"),
    "4h": TimeframeConfig("4h", "4H", 240, 60, "4h", dynamic_resolution=True, hourly_max_window_size=4),
    "1d": TimeframeConfig("1d", "1D", 1440, 60, "1d", dynamic_resolution=True, hourly_max_window_size=24),
}


def now_ms() -> int:
    return int(time.time() * 1000)


def get_timeframe_config(timeframe: str) -> TimeframeConfig:
    try:
        return TIMEFRAME_CONFIGS[timeframe]
    except KeyError:
        raise ValueError(f"Unknown timeframe={timeframe!r}") from None


def minutes_until_next_interval(interval_minutes: int, at_ms: Optional[int] = None) -> float:
    """Fractional minutes until the next UTC-aligned boundary of the interval."""
    if at_ms is None:
        at_ms = now_ms()
    interval_ms = interval_minutes * MINUTE_MS
    return (interval_ms - at_ms % interval_ms) / MINUTE_MS


def effective_resolution(timeframe: str, at_ms: Optional[int] = None) -> str:
    """
    Candle resolution to buffer for a timeframe at a given moment.

    Only timeframes with dynamic resolution ever return "1h", and only while
    the interval has more than an hour left.
    """
    cfg = get_timeframe_config(timeframe)
    if not cfg.dynamic_resolution:
        return "1m"
    remaining = minutes_until_next_interval(cfg.interval_minutes, at_ms)
    return "1h" if remaining > HOURLY_MODE_MIN_MINUTES else "1m"


def effective_max_window_size(timeframe: str, resolution: str) -> int:
    cfg = get_timeframe_config(timeframe)
    if resolution == "1h" and cfg.hourly_max_window_size is not None:
        return cfg.hourly_max_window_size
    return cfg.max_window_size


@dataclass(frozen=True)
class HistoryHours:
    """
    Hours of candles to buffer, per timeframe and resolution mode.

    4h and 1d keep separate settings for their hourly and minute modes so that
    hourly mode can hold at least a full interval of 1h candles.
    """
    default: int = 12
    four_hour_hourly: int = 168
    four_hour_minute: int = 12
    one_day_hourly: int = 168
    one_day_minute: int = 24

    @classmethod
    def uniform(cls, hours: int) -> "HistoryHours":
        return cls(hours, hours, hours, hours, hours)

    def for_mode(self, timeframe: str, resolution: str) -> int:
        hourly = resolution == "1h"
        if timeframe == "4h":
            return self.four_hour_hourly if hourly else self.four_hour_minute
        if timeframe == "1d":
            return self.one_day_hourly if hourly else self.one_day_minute
        return self.default


def candle_limit(history_hours: int, resolution: str) -> int:
    """History length in candles: hours for hourly buffers, minutes otherwise."""
    return history_hours if resolution == "1h" else history_hours * 60


def highlighted_window(minutes_remaining: float, max_window_size: int, resolution: str = "1m") -> int:
    """Window size matching the time left in the interval, clamped to [1, max_window_size]."""
    units = minutes_remaining / 60 if resolution == "1h" else minutes_remaining
    return min(max_window_size, max(1, math.ceil(units)))


def current_bucket_open_time(resolution_ms: int, at_ms: Optional[int] = None) -> int:
    """
    Open time of the bucket that is still forming (now floored to the resolution).

    Every candle that opened before it is complete.
    """
    if at_ms is None:
        at_ms = now_ms()
    return (at_ms // resolution_ms) * resolution_ms
