from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Tuple

from rangewatch.candles.cache import WindowRangeCache
from rangewatch.models.market import Candle
from rangewatch.timeframes import RESOLUTION_MS, current_bucket_open_time

log = logging.getLogger("candle_store")

BufferKey = Tuple[str, str]  # (symbol, resolution)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CandleStore:
    """
    In-memory candle buffers + freshness tracking.

    history[(symbol, resolution)]  -> closed candles, ascending open_time, no duplicates
    caches[(symbol, resolution)]   -> window stats memo for that buffer
    last_updated[(symbol, resolution)] -> when a merge last wrote the buffer

    A buffer is created on the first successful fetch, replaced by full
    fetches, extended by incremental fetches and dropped when the symbol is
    untracked. Every merge prunes the buffer's cache.
    """
    history: Dict[BufferKey, List[Candle]] = field(default_factory=dict)
    caches: Dict[BufferKey, WindowRangeCache] = field(default_factory=dict)
    last_updated: Dict[BufferKey, datetime] = field(default_factory=dict)

    def touch(self, symbol: str, resolution: str) -> None:
        """Mark this symbol/resolution as updated right now."""
        self.last_updated[(symbol, resolution)] = utcnow()

    def get_history(self, symbol: str, resolution: str) -> List[Candle]:
        return self.history.get((symbol, resolution), [])

    def get_cache(self, symbol: str, resolution: str) -> WindowRangeCache:
        return self.caches.setdefault((symbol, resolution), WindowRangeCache())

    def get_last_updated(self, symbol: str, resolution: str) -> Optional[datetime]:
        return self.last_updated.get((symbol, resolution))

    def has_any_data(self, symbol: str, resolution: str) -> bool:
        return len(self.history.get((symbol, resolution), [])) > 0

    def is_fresh(self, symbol: str, resolution: str, max_age_seconds: int) -> bool:
        """
        Freshness check:
        - Must have some data
        - last_updated must be within max_age_seconds
        """
        if not self.has_any_data(symbol, resolution):
            return False

        last = self.get_last_updated(symbol, resolution)
        if last is None:
            return False

        return (utcnow() - last) <= timedelta(seconds=max_age_seconds)

    # -------------------------
    # Fetch planning
    # -------------------------
    def needs_full_fetch(self, symbol: str, resolution: str, candle_limit: int) -> bool:
        """True when there is no buffer yet or it holds fewer than candle_limit candles."""
        return len(self.get_history(symbol, resolution)) < candle_limit

    def missing_count(
        self,
        symbol: str,
        resolution: str,
        candle_limit: int,
        now_ms: Optional[int] = None,
    ) -> int:
        """
        Completed candles the buffer is behind by, clamped to [0, candle_limit].

        Assumes the buffer has no gaps; contiguity is not verified.
        """
        candles = self.get_history(symbol, resolution)
        if not candles:
            return candle_limit

        resolution_ms = RESOLUTION_MS[resolution]
        latest_open = current_bucket_open_time(resolution_ms, now_ms)
        missing = (latest_open - candles[-1].open_time) // resolution_ms
        return max(0, min(missing, candle_limit))

    # -------------------------
    # Merging
    # -------------------------
    def merge_full(
        self,
        symbol: str,
        resolution: str,
        fetched: List[Candle],
        candle_limit: int,
    ) -> List[Candle]:
        """
        Replace the buffer with a full fetch of candle_limit + 1 rows.
        The last row is the candle still forming and is discarded.
        """
        key = (symbol, resolution)
        complete = fetched[:-1]
        if not complete:
            log.warning("Full fetch returned no complete candles symbol=%s resolution=%s", symbol, resolution)
            return self.get_history(symbol, resolution)

        candles = _dedupe_sorted(complete)[-candle_limit:]
        self.history[key] = candles
        self._after_merge(key)
        return candles

    def merge_incremental(
        self,
        symbol: str,
        resolution: str,
        fetched: List[Candle],
        candle_limit: int,
    ) -> List[Candle]:
        """
        Append the newest candles from a fetch of missing + 1 rows.

        The last row is discarded as incomplete, rows already buffered are
        skipped, and the oldest candles are evicted past candle_limit.
        Merging the same fetch twice leaves the buffer unchanged.
        """
        key = (symbol, resolution)
        existing = self.history.get(key, [])
        seen = {c.open_time for c in existing}
        new_candles = [c for c in fetched[:-1] if c.open_time not in seen]

        merged = _dedupe_sorted(existing + new_candles)
        if len(merged) > candle_limit:
            del merged[:-candle_limit]

        if not merged:
            return existing

        self.history[key] = merged
        self._after_merge(key)
        return merged

    def _after_merge(self, key: BufferKey) -> None:
        cache = self.caches.get(key)
        if cache is not None:
            removed = cache.prune(self.history[key])
            if removed:
                log.debug("Pruned %d cache entries symbol=%s resolution=%s", removed, key[0], key[1])
        self.touch(*key)

    # -------------------------
    # Lifecycle
    # -------------------------
    def drop_symbol(self, symbol: str) -> None:
        """Forget every buffer and cache belonging to symbol."""
        for store in (self.history, self.caches, self.last_updated):
            for key in [k for k in store if k[0] == symbol]:
                del store[key]


def _dedupe_sorted(candles: List[Candle]) -> List[Candle]:
    """Sort by open_time, keeping the first candle seen for each open_time."""
    by_open: Dict[int, Candle] = {}
    for c in candles:
        by_open.setdefault(c.open_time, c)
    return [by_open[t] for t in sorted(by_open)]
