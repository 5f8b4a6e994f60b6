import unittest

from rangewatch.candles.cache import WindowRangeCache
from rangewatch.models.market import CacheEntry, Candle

ENTRY = CacheEntry(high=2.0, low=1.0, range=1.0, volatility=1.5)


def _candle(open_time: int) -> Candle:
    return Candle(open_time=open_time, open="1", high="2", low="1", close="1.5", volume="3")


class TestWindowRangeCache(unittest.TestCase):
    def test_get_put(self):
        cache = WindowRangeCache()
        self.assertIsNone(cache.get(5, 0))
        cache.put(5, 0, ENTRY)
        self.assertEqual(cache.get(5, 0), ENTRY)
        self.assertIsNone(cache.get(4, 0))
        self.assertEqual(len(cache), 1)

    def test_prune_drops_evicted_start_candles(self):
        cache = WindowRangeCache()
        for start in (0, 60_000, 120_000):
            cache.put(1, start, ENTRY)
            cache.put(2, start, ENTRY)

        removed = cache.prune([_candle(60_000), _candle(120_000), _candle(180_000)])

        self.assertEqual(removed, 2)
        self.assertIsNone(cache.get(1, 0))
        self.assertIsNone(cache.get(2, 0))
        self.assertEqual(cache.get(2, 60_000), ENTRY)
        self.assertEqual(len(cache), 4)

    def test_prune_empty_buffer_clears(self):
        cache = WindowRangeCache()
        cache.put(1, 0, ENTRY)
        cache.put(3, 60_000, ENTRY)
        self.assertEqual(cache.prune([]), 2)
        self.assertEqual(len(cache), 0)


if __name__ == "__main__":
    unittest.main()
