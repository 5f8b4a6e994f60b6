from __future__ import annotations

from typing import List, Optional, Sequence

from rangewatch.candles.cache import WindowRangeCache
from rangewatch.models.market import CacheEntry, Candle, WindowRange


# -------------------------
# Per-window stats
# -------------------------
def window_volatility(window: Sequence[Candle], window_range: float) -> float:
    """
    Volatility of a window:
      sum((high - low) * 2 - |close - open|) over its candles / window range

    Measures how much intra-candle travel happened relative to the net spread.
    Zero when the window has no range.
    """
    if window_range <= 0:
        return 0.0
    travel = sum((c.h - c.l) * 2 - abs(c.c - c.o) for c in window)
    return travel / window_range


def compute_window(window: Sequence[Candle]) -> CacheEntry:
    high = max(c.h for c in window)
    low = min(c.l for c in window)
    spread = high - low
    return CacheEntry(
        high=high,
        low=low,
        range=spread,
        volatility=window_volatility(window, spread),
    )


def _original_strings(window: Sequence[Candle], high: float, low: float) -> tuple:
    """Map the numeric extremes back to the candle strings that set them."""
    high_str = next(c.high for c in window if c.h == high)
    low_str = next(c.low for c in window if c.l == low)
    return high_str, low_str


# -------------------------
# Max range over all positions
# -------------------------
def calculate_window_range(
    candles: Sequence[Candle],
    window_size: int,
    cache: Optional[WindowRangeCache] = None,
) -> WindowRange:
    """
    Slide a window of `window_size` candles over the buffer and summarize.

    Position i (0 = oldest) gets weight i + 1 in every weighted average.
    The max-range position is the first one reaching the maximum.
    """
    n = len(candles)
    if window_size <= 0 or n < window_size:
        return WindowRange.placeholder(window_size)

    best_entry: Optional[CacheEntry] = None
    best_pos = 0

    weight_sum = 0
    range_wsum = 0.0
    vol_wsum = 0.0
    change_wsum = 0.0
    change_sum = 0.0
    max_change = 0.0
    max_vol = 0.0

    positions = n - window_size + 1
    for i in range(positions):
        first_open = candles[i].open_time
        entry = cache.get(window_size, first_open) if cache is not None else None
        if entry is None:
            entry = compute_window(candles[i:i + window_size])
            if cache is not None:
                cache.put(window_size, first_open, entry)

        if best_entry is None or entry.range > best_entry.range:
            best_entry = entry
            best_pos = i

        change = abs(candles[i + window_size - 1].c - candles[i].o)
        weight = i + 1
        weight_sum += weight
        range_wsum += entry.range * weight
        vol_wsum += entry.volatility * weight
        change_wsum += change * weight
        change_sum += change
        max_change = max(max_change, change)
        max_vol = max(max_vol, entry.volatility)

    best_window = candles[best_pos:best_pos + window_size]
    high_str, low_str = _original_strings(best_window, best_entry.high, best_entry.low)

    return WindowRange(
        window_size=window_size,
        range=best_entry.range,
        high=high_str,
        low=low_str,
        wma=range_wsum / weight_sum,
        avg_abs_change=change_sum / positions,
        wma_abs_change=change_wsum / weight_sum,
        max_abs_change=max_change,
        max_volatility=max_vol,
        wma_volatility=vol_wsum / weight_sum,
    )


def calculate_max_ranges(
    candles: Sequence[Candle],
    max_window_size: int,
    cache: Optional[WindowRangeCache] = None,
) -> List[WindowRange]:
    """
    One WindowRange per window size, from max_window_size down to 1.

    Window sizes the buffer is too short for get a zeroed placeholder, so the
    result always has exactly max_window_size records.
    """
    return [
        calculate_window_range(candles, window_size, cache)
        for window_size in range(max_window_size, 0, -1)
    ]


def find_window(ranges: Sequence[WindowRange], window_size: int) -> Optional[WindowRange]:
    for r in ranges:
        if r.window_size == window_size:
            return r
    return None
