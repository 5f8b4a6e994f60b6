from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from rangewatch.models.market import Candle, CacheEntry

CacheKey = Tuple[int, int]  # (window_size, first_open_time)


@dataclass
class WindowRangeCache:
    """
    Memoized high/low/range/volatility per window slice.

    entries[(window_size, first_open_time)] -> CacheEntry

    Historical candles never change, so an entry stays valid for as long as
    the candle it starts at is still in the buffer. The buffer only grows at
    the new end and is trimmed at the old end, so once a start candle is
    evicted its entries can never be hit again and are pruned.
    """
    entries: Dict[CacheKey, CacheEntry] = field(default_factory=dict)

    def get(self, window_size: int, first_open_time: int) -> Optional[CacheEntry]:
        return self.entries.get((window_size, first_open_time))

    def put(self, window_size: int, first_open_time: int, entry: CacheEntry) -> None:
        self.entries[(window_size, first_open_time)] = entry

    def prune(self, buffer: Iterable[Candle]) -> int:
        """
        Drop every entry whose start candle is no longer in `buffer`.
        Returns how many entries were removed.
        """
        resident = {c.open_time for c in buffer}
        if not resident:
            removed = len(self.entries)
            self.entries.clear()
            return removed

        stale = [key for key in self.entries if key[1] not in resident]
        for key in stale:
            del self.entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self.entries)
