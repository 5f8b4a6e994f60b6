from __future__ import annotations

import random
import time

from rangewatch.candles.store import CandleStore
from rangewatch.models.market import Candle
from rangewatch.stats.engine import calculate_max_ranges
from rangewatch.thresholds.engine import ThresholdEvaluator
from rangewatch.timeframes import MINUTE_MS


def _random_walk(start_ms: int, count: int, price: float) -> list[Candle]:
    candles = []
    for i in range(count):
        o = price
        c = o + random.uniform(-0.3, 0.3)
        h = max(o, c) + random.uniform(0, 0.2)
        l = min(o, c) - random.uniform(0, 0.2)
        candles.append(
            Candle(
                open_time=start_ms + i * MINUTE_MS,
                open=f"{o:.2f}",
                high=f"{h:.2f}",
                low=f"{l:.2f}",
                close=f"{c:.2f}",
                volume=str(random.randint(1, 50)),
            )
        )
        price = c
    return candles


def run(symbol: str = "BTCUSDT", minutes: int = 90, limit: int = 60, max_window: int = 15) -> None:
    """
    Feeds fake 1m candles into a CandleStore one minute at a time.

    - The first merge is a full fetch of limit + 1 candles.
    - Every later minute is an incremental fetch of 2 candles
      (1 new + 1 still forming, which the store discards).
    - After each merge we print the 15m window stats and the cache size,
      which stays bounded because evicted windows are pruned.
    """
    store = CandleStore()
    evaluator = ThresholdEvaluator(multiplier=100)

    start = (int(time.time() * 1000) // MINUTE_MS) * MINUTE_MS - minutes * MINUTE_MS
    feed = _random_walk(start, minutes + limit + 1, price=100.0)

    print(f"Simulating {minutes} minutes of 1m candles for {symbol}...\n")

    store.merge_full(symbol, "1m", feed[: limit + 1], limit)
    for minute in range(limit, limit + minutes):
        store.merge_incremental(symbol, "1m", feed[minute : minute + 2], limit)

        candles = store.get_history(symbol, "1m")
        cache = store.get_cache(symbol, "1m")
        ranges = calculate_max_ranges(candles, max_window, cache)
        top = ranges[0]

        result = evaluator.evaluate(
            price=candles[-1].close,
            reference_close=candles[-max_window].open,
            window=top,
            minutes_remaining=max_window,
            interval_minutes=max_window,
        )
        print(
            f"[{minute:>4}] buffer={len(candles)} cache={len(cache)} "
            f"{top.window_size}m range={top.range:.2f} H={top.high} L={top.low} "
            f"wma={top.wma:.3f} vol={top.wma_volatility:.2f} color={result.color}"
        )

    print("\nDone.")


if __name__ == "__main__":
    run()
