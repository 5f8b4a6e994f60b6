import asyncio
import unittest

import httpx

from rangewatch.jobs.poller import PollingController, PollState
from rangewatch.models.market import Candle
from rangewatch.providers.base import MarketDataProvider, RateLimitedError
from rangewatch.stats.engine import find_window
from rangewatch.thresholds.engine import NOTIFY_THRESHOLD_AUTO, ThresholdEvaluator
from rangewatch.timeframes import HOUR_MS, MINUTE_MS

# 2024-01-01T00:00:00Z
MIDNIGHT = 1_704_067_200_000


def _candle(open_time: int, price: float = 100.0) -> Candle:
    return Candle(
        open_time=open_time,
        open=f"{price:.2f}",
        high=f"{price + 1:.2f}",
        low=f"{price - 1:.2f}",
        close=f"{price + 0.5:.2f}",
        volume="1",
    )


class FakeProvider(MarketDataProvider):
    """
    Serves candles ending at the bucket that is forming at clock(), like the
    real klines endpoint. Failures can be scripted per symbol.
    """

    def __init__(self, clock):
        self.clock = clock
        self.prices = {}
        self.price_errors = []
        self.candle_errors = {}
        self.candle_calls = []
        self.price_calls = 0
        self.close_calls = []
        self.gate = None

    async def fetch_prices(self, symbols):
        self.price_calls += 1
        if self.price_errors:
            raise self.price_errors.pop(0)
        return {s: self.prices.get(s, "100") for s in symbols}

    async def fetch_candles(self, symbol, interval, limit):
        self.candle_calls.append((symbol, interval, limit))
        if self.gate is not None:
            await self.gate.wait()
        if symbol in self.candle_errors:
            raise self.candle_errors[symbol]
        step = HOUR_MS if interval == "1h" else MINUTE_MS
        forming = (self.clock() // step) * step
        return [_candle(forming - (limit - 1 - i) * step, 100.0 + i % 7) for i in range(limit)]

    async def fetch_candle_closes(self, symbols, interval):
        self.close_calls.append((tuple(symbols), interval))
        return {s: "100" for s in symbols}


class StopLoop(Exception):
    pass


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestPollState(unittest.TestCase):
    def test_retry_after_sets_interval(self):
        state = PollState(normal_interval_ms=5000, max_backoff_ms=60000)
        self.assertEqual(state.on_rate_limited(30), 30000)
        self.assertTrue(state.rate_limited)
        self.assertEqual(state.retry_after_seconds, 30)

        self.assertTrue(state.on_success())
        self.assertEqual(state.current_interval_ms, 5000)
        self.assertFalse(state.rate_limited)
        self.assertFalse(state.on_success())

    def test_doubling_is_capped(self):
        state = PollState(normal_interval_ms=5000, max_backoff_ms=60000)
        delays = [state.on_rate_limited() for _ in range(5)]
        self.assertEqual(delays, [10000, 20000, 40000, 60000, 60000])
        self.assertEqual(state.on_rate_limited(600), 60000)

    def test_zero_retry_after_is_honoured(self):
        state = PollState(normal_interval_ms=5000, max_backoff_ms=60000)
        state.on_rate_limited()
        self.assertEqual(state.current_interval_ms, 10000)

        self.assertEqual(state.on_rate_limited(0), 5000)
        self.assertTrue(state.rate_limited)
        self.assertEqual(state.retry_after_seconds, 0)


class TestPollingController(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        # 00:05:30 -> 15m interval has 9.5 minutes left
        self.clock = Clock(MIDNIGHT + 5 * MINUTE_MS + 30_000)
        self.provider = FakeProvider(self.clock)
        self.controller = PollingController(
            self.provider,
            timeframe="15m",
            history_hours=1,
            symbols=["btcusdt", "ETHUSDT"],
            clock=self.clock,
        )

    async def asyncTearDown(self):
        await self.controller.stop()

    async def test_full_then_incremental_fetch(self):
        await self.controller.poll_candles()
        self.assertEqual(self.provider.candle_calls, [("BTCUSDT", "1m", 61), ("ETHUSDT", "1m", 61)])
        buffer = self.controller.store.get_history("BTCUSDT", "1m")
        self.assertEqual(len(buffer), 60)
        self.assertEqual(buffer[-1].open_time, MIDNIGHT + 4 * MINUTE_MS)

        # 00:08:30: buffer ends at 00:04, the 00:08 bucket is forming
        self.clock.now += 3 * MINUTE_MS
        self.provider.candle_calls.clear()
        await self.controller.poll_candles()

        self.assertEqual(self.provider.candle_calls, [("BTCUSDT", "1m", 5), ("ETHUSDT", "1m", 5)])
        buffer = self.controller.store.get_history("BTCUSDT", "1m")
        self.assertEqual(len(buffer), 60)
        self.assertEqual(buffer[-1].open_time, MIDNIGHT + 7 * MINUTE_MS)

    async def test_refetch_within_same_minute_keeps_buffer(self):
        await self.controller.poll_candles()
        before = list(self.controller.store.get_history("BTCUSDT", "1m"))
        self.provider.candle_calls.clear()

        await self.controller.poll_candles()
        self.assertEqual(self.provider.candle_calls, [("BTCUSDT", "1m", 2), ("ETHUSDT", "1m", 2)])
        self.assertEqual(self.controller.store.get_history("BTCUSDT", "1m"), before)

    async def test_missing_count_is_zero_once_caught_up(self):
        await self.controller.poll_candles()
        self.clock.now -= MINUTE_MS
        self.provider.candle_calls.clear()
        await self.controller.poll_candles()
        self.assertEqual(self.provider.candle_calls, [])

    async def test_publishes_every_window_size(self):
        await self.controller.poll_candles()
        ranges = self.controller.window_ranges["BTCUSDT"]
        self.assertEqual([r.window_size for r in ranges], list(range(15, 0, -1)))
        self.assertGreater(ranges[0].range, 0)

    async def test_failure_is_isolated_per_symbol(self):
        await self.controller.poll_candles()
        before = list(self.controller.store.get_history("ETHUSDT", "1m"))

        self.clock.now += 2 * MINUTE_MS
        self.provider.candle_errors["ETHUSDT"] = httpx.ConnectError("boom")
        await self.controller.poll_candles()

        self.assertEqual(self.controller.store.get_history("ETHUSDT", "1m"), before)
        self.assertEqual(
            self.controller.store.get_history("BTCUSDT", "1m")[-1].open_time,
            MIDNIGHT + 6 * MINUTE_MS,
        )
        self.assertIsNone(self.controller.error)

    async def test_rate_limit_then_recovery(self):
        self.provider.price_errors.append(RateLimitedError(429, retry_after=30))
        await self.controller.poll_prices()

        self.assertTrue(self.controller.poll_state.rate_limited)
        self.assertEqual(self.controller.poll_state.current_interval_ms, 30000)
        self.assertIn("Retry after 30s", self.controller.error)

        await self.controller.poll_prices()
        self.assertFalse(self.controller.poll_state.rate_limited)
        self.assertEqual(self.controller.poll_state.current_interval_ms, 5000)
        self.assertIsNone(self.controller.error)
        self.assertEqual(self.controller.prices["BTCUSDT"], "100")

    async def test_price_loop_backoff_schedule(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 5:
                raise StopLoop()

        controller = PollingController(
            self.provider, timeframe="15m", history_hours=1, symbols=["BTCUSDT"], clock=self.clock, sleep=record_sleep
        )
        self.provider.price_errors.extend(
            [RateLimitedError(429, retry_after=30), RateLimitedError(429, retry_after=30), RateLimitedError(429)]
        )

        with self.assertRaises(StopLoop):
            await controller.price_loop()

        # one fetch per sleep: Tn while rate limited, T0 after the first success
        self.assertEqual(sleeps, [30.0, 30.0, 60.0, 5.0, 5.0])
        self.assertEqual(self.provider.price_calls, 5)
        self.assertFalse(controller.poll_state.rate_limited)
        self.assertIsNone(controller.error)

    async def test_one_off_price_fetch_leaves_backoff_alone(self):
        self.provider.price_errors.append(RateLimitedError(429, retry_after=30))
        await self.controller.poll_prices()

        await self.controller.poll_prices(["BTCUSDT"], update_state=False)
        self.assertEqual(self.controller.prices["BTCUSDT"], "100")
        self.assertEqual(self.controller.poll_state.current_interval_ms, 30000)
        self.assertTrue(self.controller.poll_state.rate_limited)
        self.assertIn("Retry after 30s", self.controller.error)

        self.provider.price_errors.append(RateLimitedError(429))
        await self.controller.poll_prices(["BTCUSDT"], update_state=False)
        self.assertEqual(self.controller.poll_state.current_interval_ms, 30000)

    async def test_zero_retry_after_in_error(self):
        self.provider.price_errors.append(RateLimitedError(429, retry_after=0))
        await self.controller.poll_prices()
        self.assertIn("Retry after 0s", self.controller.error)
        self.assertEqual(self.controller.poll_state.current_interval_ms, 5000)

    async def test_price_error_keeps_last_prices(self):
        self.provider.prices["BTCUSDT"] = "101"
        await self.controller.poll_prices()
        self.provider.price_errors.append(httpx.ReadTimeout("slow"))
        await self.controller.poll_prices()

        self.assertEqual(self.controller.prices["BTCUSDT"], "101")
        self.assertIn("Failed to fetch prices", self.controller.error)
        self.assertFalse(self.controller.poll_state.rate_limited)

    async def test_untrack_discards_in_flight_result(self):
        self.provider.gate = asyncio.Event()
        task = asyncio.create_task(self.controller.poll_candles())
        await asyncio.sleep(0)

        self.controller.untrack("BTCUSDT")
        self.provider.gate.set()
        await task

        self.assertFalse(self.controller.store.has_any_data("BTCUSDT", "1m"))
        self.assertNotIn("BTCUSDT", self.controller.window_ranges)
        self.assertTrue(self.controller.store.has_any_data("ETHUSDT", "1m"))

    async def test_in_flight_symbols_are_skipped(self):
        self.provider.gate = asyncio.Event()
        first = asyncio.create_task(self.controller.poll_candles())
        await asyncio.sleep(0)
        await self.controller.poll_candles()

        self.provider.gate.set()
        await first
        self.assertEqual(len(self.provider.candle_calls), 2)

    async def test_snapshot(self):
        self.controller.evaluator = ThresholdEvaluator(multiplier=100)
        await self.controller.poll_candles()
        await self.controller.poll_reference_closes()
        self.provider.prices["BTCUSDT"] = "150"
        await self.controller.poll_prices()

        snap = self.controller.snapshot()
        self.assertEqual(snap.timeframe, "15m")
        self.assertEqual(snap.highlighted_window, 10)
        self.assertEqual([s.symbol for s in snap.symbols], ["BTCUSDT", "ETHUSDT"])
        btc = snap.symbols[0]
        self.assertEqual(btc.reference_close, "100")
        self.assertEqual(btc.flags.color, "green")
        self.assertEqual(btc.flags.range_dots, 4)
        self.assertEqual(len(btc.window_ranges), 15)
        self.assertIsNone(snap.symbols[1].flags.color)

    async def test_auto_target_needs_window_stats(self):
        sent = []
        controller = PollingController(
            self.provider,
            timeframe="15m",
            history_hours=1,
            symbols=["BTCUSDT"],
            evaluator=ThresholdEvaluator(yellow_threshold=NOTIFY_THRESHOLD_AUTO, green_threshold=NOTIFY_THRESHOLD_AUTO),
            clock=self.clock,
            on_notify=lambda *args: sent.append(args),
        )
        self.provider.candle_errors["BTCUSDT"] = httpx.ConnectError("down")

        await controller.poll_prices()
        await controller.poll_reference_closes()
        await controller.poll_candles()
        self.provider.prices["BTCUSDT"] = "100.01"
        await controller.poll_prices()

        self.assertNotIn("BTCUSDT", controller.window_ranges)
        self.assertEqual(sent, [])

        del self.provider.candle_errors["BTCUSDT"]
        await controller.poll_candles()
        self.assertEqual(sent, [])

        self.provider.prices["BTCUSDT"] = "150"
        await controller.poll_prices()
        self.assertEqual(sent, [("BTCUSDT", "BTCUSDT 15m", "Deviation exceeds expected range")])

    async def test_one_day_hourly_mode_buffers_a_full_day(self):
        # 02:00 -> 22 hours left in the day
        clock = Clock(MIDNIGHT + 2 * HOUR_MS)
        provider = FakeProvider(clock)
        controller = PollingController(provider, timeframe="1d", symbols=["BTCUSDT"], clock=clock)
        self.assertEqual(controller.resolution, "1h")
        self.assertEqual(controller.buffer_limit(), 168)
        self.assertEqual(controller.buffer_limit("1m"), 24 * 60)

        await controller.poll_candles()
        await controller.poll_reference_closes()
        provider.prices["BTCUSDT"] = "500"
        await controller.poll_prices()

        self.assertEqual(provider.candle_calls, [("BTCUSDT", "1h", 169)])
        self.assertEqual(len(controller.store.get_history("BTCUSDT", "1h")), 168)

        snap = controller.snapshot()
        self.assertEqual(snap.highlighted_window, 22)
        row = snap.symbols[0]
        self.assertGreater(find_window(row.window_ranges, 22).range, 0)
        self.assertEqual(row.flags.color, "green")

    async def test_track_and_reorder(self):
        self.assertFalse(self.controller.track("BTCUSDT"))
        self.assertTrue(self.controller.track(" solusdt "))
        self.controller.reorder(2, 0)
        self.assertEqual(self.controller.symbols, ["SOLUSDT", "BTCUSDT", "ETHUSDT"])
        with self.assertRaises(IndexError):
            self.controller.reorder(0, 5)

    async def test_mode_switch_refetches_in_new_resolution(self):
        clock = Clock(MIDNIGHT + 2 * HOUR_MS)
        provider = FakeProvider(clock)
        controller = PollingController(provider, timeframe="4h", history_hours=6, symbols=["BTCUSDT"], clock=clock)
        self.assertEqual(controller.resolution, "1h")
        self.assertEqual(controller.max_window_size, 4)

        await controller.poll_candles()
        self.assertEqual(provider.candle_calls, [("BTCUSDT", "1h", 7)])
        self.assertFalse(await controller.check_mode())

        clock.now = MIDNIGHT + 3 * HOUR_MS + 10 * MINUTE_MS
        provider.candle_calls.clear()
        self.assertTrue(await controller.check_mode())

        self.assertEqual(controller.resolution, "1m")
        self.assertEqual(provider.candle_calls, [("BTCUSDT", "1m", 361)])
        self.assertEqual(len(controller.window_ranges["BTCUSDT"]), 60)
        await controller.stop()

    async def test_loops_run_and_stop(self):
        async def fast_sleep(_seconds):
            await asyncio.sleep(0)

        controller = PollingController(
            self.provider, timeframe="15m", history_hours=1, symbols=["BTCUSDT"], clock=self.clock, sleep=fast_sleep
        )
        controller.start()
        for _ in range(10):
            await asyncio.sleep(0)
        self.assertTrue(controller.running)
        self.assertIn("BTCUSDT", controller.prices)
        self.assertTrue(self.provider.close_calls)
        self.assertTrue(self.provider.candle_calls)

        await controller.stop()
        self.assertFalse(controller.running)


if __name__ == "__main__":
    unittest.main()
