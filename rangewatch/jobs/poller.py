from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from rangewatch.candles.store import CandleStore
from rangewatch.models.market import WindowRange
from rangewatch.models.snapshot import DashboardSnapshot, SymbolSnapshot, ThresholdFlags
from rangewatch.providers.base import MarketDataProvider, RateLimitedError
from rangewatch.stats.engine import calculate_max_ranges, find_window
from rangewatch.thresholds.engine import NotificationTracker, ThresholdEvaluator, ThresholdResult
from rangewatch.timeframes import (
    HistoryHours,
    candle_limit,
    effective_max_window_size,
    effective_resolution,
    get_timeframe_config,
    highlighted_window,
    minutes_until_next_interval,
    now_ms,
)

log = logging.getLogger("poller")

POLL_INTERVAL_MS = 5_000
CLOSE_POLL_INTERVAL_MS = 60_000
CANDLE_POLL_INTERVAL_MS = {"1m": 60_000, "1h": 3_600_000}
MODE_CHECK_INTERVAL_MS = 60_000
MAX_BACKOFF_MS = 60_000


@dataclass
class PollState:
    """
    Backoff state of the live-price loop.

    Normal: current_interval_ms == normal_interval_ms
    Backoff: entered on a rate-limit response; left on the next success.
    """
    normal_interval_ms: int = POLL_INTERVAL_MS
    max_backoff_ms: int = MAX_BACKOFF_MS
    current_interval_ms: int = field(init=False)
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None

    def __post_init__(self) -> None:
        self.current_interval_ms = self.normal_interval_ms

    @property
    def backing_off(self) -> bool:
        return self.current_interval_ms != self.normal_interval_ms

    def on_rate_limited(self, retry_after_seconds: Optional[int] = None) -> int:
        """Escalate the interval; returns the delay before the next attempt."""
        if retry_after_seconds is not None:
            # Honour the upstream's wait, but never poll faster than normal.
            delay = max(self.normal_interval_ms, min(retry_after_seconds * 1000, self.max_backoff_ms))
        else:
            delay = min(self.current_interval_ms * 2, self.max_backoff_ms)
        self.current_interval_ms = delay
        self.rate_limited = True
        self.retry_after_seconds = retry_after_seconds
        return delay

    def on_success(self) -> bool:
        """Back to normal polling; True if we were backing off."""
        was_backing_off = self.backing_off
        self.current_interval_ms = self.normal_interval_ms
        self.rate_limited = False
        self.retry_after_seconds = None
        return was_backing_off


class PollingController:
    """
    Owns the tracked symbols and every refresh loop that feeds them.

    Loops (asyncio tasks, each awaits its fetch before sleeping so one loop
    never has two fetches in flight):
    - prices:  live price, POLL_INTERVAL_MS with rate-limit backoff
    - closes:  reference close of the active timeframe, every minute
    - candles: 1m candles every minute, or 1h candles every hour
    - mode:    resolution switch check for 4h/1d, every minute

    Only the price loop reports errors to the user; the others log and carry on.
    Results for a symbol that was untracked while its fetch was in flight are
    dropped (per-symbol generation counter).
    """

    def __init__(
        self,
        provider: MarketDataProvider,
        timeframe: str = "15m",
        history_hours: Union[int, HistoryHours] = HistoryHours(),
        symbols: Optional[List[str]] = None,
        evaluator: Optional[ThresholdEvaluator] = None,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        max_backoff_ms: int = MAX_BACKOFF_MS,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_notify: Optional[Callable[[str, str, str], None]] = None,
    ) -> None:
        self.provider = provider
        self.timeframe = timeframe
        self.timeframe_config = get_timeframe_config(timeframe)
        if isinstance(history_hours, int):
            history_hours = HistoryHours.uniform(history_hours)
        self.history_hours = history_hours
        self.evaluator = evaluator or ThresholdEvaluator()
        self._clock = clock
        self._sleep = sleep

        self.store = CandleStore()
        self.symbols: List[str] = []
        self.prices: Dict[str, str] = {}
        self.reference_closes: Dict[str, str] = {}
        self.window_ranges: Dict[str, List[WindowRange]] = {}
        self.poll_state = PollState(normal_interval_ms=poll_interval_ms, max_backoff_ms=max_backoff_ms)
        self.error: Optional[str] = None
        self.resolution = effective_resolution(timeframe, clock())

        tracker_kwargs = {"on_notify": on_notify} if on_notify is not None else {}
        self.notifications = NotificationTracker(label=self.timeframe_config.label, **tracker_kwargs)

        self._generations: Dict[str, int] = {}
        self._in_flight: Set[Tuple[str, str]] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._symbol_tasks: Dict[str, asyncio.Task] = {}

        for symbol in symbols or []:
            self.track(symbol)

    # -------------------------
    # Lifecycle
    # -------------------------
    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Kick off every loop; each one fetches immediately."""
        if self.running:
            return
        self._tasks["prices"] = asyncio.create_task(self.price_loop())
        self._tasks["closes"] = asyncio.create_task(
            self._run_loop("closes", self.poll_reference_closes, lambda: CLOSE_POLL_INTERVAL_MS)
        )
        self._start_candle_loop(immediate=True)
        if self.timeframe_config.dynamic_resolution:
            self._tasks["mode"] = asyncio.create_task(
                self._run_loop("mode", self.check_mode, lambda: MODE_CHECK_INTERVAL_MS, immediate=False)
            )
        log.info(
            "Polling started timeframe=%s resolution=%s symbols=%s",
            self.timeframe,
            self.resolution,
            self.symbols,
        )

    async def stop(self) -> None:
        """Cancel every loop and pending per-symbol refresh."""
        tasks = list(self._tasks.values()) + list(self._symbol_tasks.values())
        self._tasks.clear()
        self._symbol_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("Polling stopped")

    def track(self, symbol: str) -> bool:
        """Start tracking symbol; returns False if it was empty or already tracked."""
        symbol = symbol.strip().upper()
        if not symbol or symbol in self.symbols:
            return False

        self.symbols.append(symbol)
        self._generations[symbol] = self._generations.get(symbol, 0) + 1
        if self.running:
            self._symbol_tasks[symbol] = asyncio.create_task(self._bootstrap_symbol(symbol))
        log.info("Tracking symbol=%s", symbol)
        return True

    def untrack(self, symbol: str) -> bool:
        """Stop tracking symbol and drop its buffers, caches and pending work."""
        symbol = symbol.strip().upper()
        if symbol not in self.symbols:
            return False

        self.symbols.remove(symbol)
        self._generations[symbol] = self._generations.get(symbol, 0) + 1

        task = self._symbol_tasks.pop(symbol, None)
        if task is not None:
            task.cancel()

        self.store.drop_symbol(symbol)
        self.prices.pop(symbol, None)
        self.reference_closes.pop(symbol, None)
        self.window_ranges.pop(symbol, None)
        self.notifications.forget(symbol)
        log.info("Untracked symbol=%s", symbol)
        return True

    def reorder(self, from_index: int, to_index: int) -> None:
        if from_index == to_index:
            return
        if not (0 <= from_index < len(self.symbols) and 0 <= to_index < len(self.symbols)):
            raise IndexError(f"reorder out of range from={from_index} to={to_index} size={len(self.symbols)}")
        symbol = self.symbols.pop(from_index)
        self.symbols.insert(to_index, symbol)

    # -------------------------
    # Loops
    # -------------------------
    async def _run_loop(
        self,
        name: str,
        poll: Callable[[], Awaitable[object]],
        interval_ms: Callable[[], int],
        immediate: bool = True,
    ) -> None:
        if not immediate:
            await self._sleep(interval_ms() / 1000)
        while True:
            try:
                await poll()
            except Exception as e:
                # Keep loop alive even if a cycle blows up, but log the error.
                log.error("%s loop cycle failed error=%s", name, repr(e))
                log.error(traceback.format_exc())
            await self._sleep(interval_ms() / 1000)

    async def price_loop(self) -> None:
        """Live-price loop; sleeps for the current (possibly backed-off) interval."""
        await self._run_loop("prices", self.poll_prices, lambda: self.poll_state.current_interval_ms)

    def _start_candle_loop(self, immediate: bool) -> None:
        period = CANDLE_POLL_INTERVAL_MS[self.resolution]
        self._tasks["candles"] = asyncio.create_task(
            self._run_loop("candles", self.poll_candles, lambda: period, immediate=immediate)
        )

    async def _bootstrap_symbol(self, symbol: str) -> None:
        """First fetch for a symbol added while polling is running."""
        try:
            await self.poll_prices([symbol], update_state=False)
            await self.poll_reference_closes([symbol])
            await self.poll_candles([symbol])
        finally:
            if self._symbol_tasks.get(symbol) is asyncio.current_task():
                del self._symbol_tasks[symbol]

    # -------------------------
    # Poll cycles
    # -------------------------
    def _generation_snapshot(self, symbols: List[str]) -> Dict[str, int]:
        return {s: self._generations.get(s, 0) for s in symbols}

    def _is_current(self, symbol: str, generation: int) -> bool:
        return symbol in self.symbols and self._generations.get(symbol) == generation

    async def poll_prices(self, symbols: Optional[List[str]] = None, update_state: bool = True) -> None:
        """
        One live-price cycle. Rate limits move the loop into backoff; any
        other failure is reported and the last known prices stay.

        update_state=False (one-off fetches outside the price loop) leaves the
        backoff state and the user-facing error alone.
        """
        symbols = list(self.symbols) if symbols is None else symbols
        if not symbols:
            return

        generations = self._generation_snapshot(symbols)
        try:
            data = await self.provider.fetch_prices(symbols)
        except RateLimitedError as e:
            if not update_state:
                log.warning("Price fetch rate limited symbols=%s retry_after=%s", symbols, e.retry_after)
                return
            delay = self.poll_state.on_rate_limited(e.retry_after)
            self.error = f"{e}. Retry after {e.retry_after}s" if e.retry_after is not None else str(e)
            log.warning("Price poll rate limited next_interval_ms=%d", delay)
            return
        except Exception as e:
            if update_state:
                self.error = f"Failed to fetch prices: {e}"
            log.error("Price poll failed symbols=%s error=%s", symbols, repr(e))
            log.error(traceback.format_exc())
            return

        if update_state:
            self.error = None
            if self.poll_state.on_success():
                log.info("Price poll recovered, interval reset to %dms", self.poll_state.current_interval_ms)

        for symbol in symbols:
            if symbol in data and self._is_current(symbol, generations[symbol]):
                self.prices[symbol] = data[symbol]

        self.check_notifications()

    async def poll_reference_closes(self, symbols: Optional[List[str]] = None) -> None:
        symbols = list(self.symbols) if symbols is None else symbols
        if not symbols:
            return

        generations = self._generation_snapshot(symbols)
        interval = self.timeframe_config.candle_interval
        try:
            closes = await self.provider.fetch_candle_closes(symbols, interval)
        except Exception as e:
            # Log error but don't surface it; the price loop owns user-facing errors.
            log.error("Close poll failed interval=%s error=%s", interval, repr(e))
            log.error(traceback.format_exc())
            return

        for symbol, close in closes.items():
            if symbol in generations and self._is_current(symbol, generations[symbol]):
                self.reference_closes[symbol] = close

    async def poll_candles(
        self,
        symbols: Optional[List[str]] = None,
        resolution: Optional[str] = None,
        force_full: bool = False,
    ) -> None:
        """
        One candle refresh for `resolution` (default: the active one).

        Each symbol gets a full fetch (limit + 1) when its buffer is short,
        an incremental fetch (missing + 1) when it is behind, or nothing.
        A failed fetch keeps that symbol's previous buffer and never affects
        the others. Symbols with a fetch already in flight are skipped.
        """
        symbols = list(self.symbols) if symbols is None else symbols
        resolution = resolution or self.resolution
        limit = self.buffer_limit(resolution)
        at_ms = self._clock()

        plan: List[Tuple[str, int, bool]] = []
        for symbol in symbols:
            if (symbol, resolution) in self._in_flight:
                log.debug("Candle fetch already in flight symbol=%s resolution=%s", symbol, resolution)
                continue
            if force_full or self.store.needs_full_fetch(symbol, resolution, limit):
                plan.append((symbol, limit + 1, True))
                continue
            missing = self.store.missing_count(symbol, resolution, limit, at_ms)
            if missing > 0:
                plan.append((symbol, missing + 1, False))

        if not plan:
            return

        generations = self._generation_snapshot([p[0] for p in plan])
        keys = [(symbol, resolution) for symbol, _, _ in plan]
        self._in_flight.update(keys)
        try:
            results = await asyncio.gather(
                *(self.provider.fetch_candles(symbol, resolution, n) for symbol, n, _ in plan),
                return_exceptions=True,
            )
        finally:
            self._in_flight.difference_update(keys)

        merged: List[str] = []
        for (symbol, n, full), result in zip(plan, results):
            if isinstance(result, BaseException):
                # Keep the existing buffer; siblings are unaffected.
                log.error(
                    "Candle fetch failed symbol=%s resolution=%s limit=%d error=%s",
                    symbol,
                    resolution,
                    n,
                    repr(result),
                )
                continue
            if not self._is_current(symbol, generations[symbol]):
                log.info("Discarding late candles for untracked symbol=%s", symbol)
                continue

            if full:
                self.store.merge_full(symbol, resolution, result, limit)
            else:
                self.store.merge_incremental(symbol, resolution, result, limit)
            merged.append(symbol)

        log.info(
            "Candle refresh resolution=%s merged=%d/%d symbols",
            resolution,
            len(merged),
            len(plan),
        )

        if resolution == self.resolution:
            self.publish_ranges(merged)
            self.check_notifications()

    async def check_mode(self) -> bool:
        """
        Switch candle resolution when the time to expiry says so.

        On a change: cancel the candle loop, do one full refetch in the new
        resolution, then start a loop at that resolution's period.
        """
        new_resolution = effective_resolution(self.timeframe, self._clock())
        if new_resolution == self.resolution:
            return False

        log.info("Resolution change timeframe=%s %s -> %s", self.timeframe, self.resolution, new_resolution)
        task = self._tasks.pop("candles", None)
        if task is not None:
            task.cancel()

        self.resolution = new_resolution
        self.window_ranges.clear()
        await self.poll_candles(resolution=new_resolution, force_full=True)
        if self.running:
            self._start_candle_loop(immediate=False)
        return True

    # -------------------------
    # Derived state
    # -------------------------
    @property
    def max_window_size(self) -> int:
        return effective_max_window_size(self.timeframe, self.resolution)

    def buffer_limit(self, resolution: Optional[str] = None) -> int:
        """Candles kept per buffer for the timeframe in `resolution` (default: the active one)."""
        resolution = resolution or self.resolution
        return candle_limit(self.history_hours.for_mode(self.timeframe, resolution), resolution)

    def publish_ranges(self, symbols: Optional[List[str]] = None) -> None:
        """Recompute WindowRange records from the active buffers."""
        symbols = list(self.symbols) if symbols is None else symbols
        for symbol in symbols:
            if symbol not in self.symbols:
                continue
            candles = self.store.get_history(symbol, self.resolution)
            if not candles:
                continue
            cache = self.store.get_cache(symbol, self.resolution)
            self.window_ranges[symbol] = calculate_max_ranges(candles, self.max_window_size, cache)

    def _timing(self) -> Tuple[float, int]:
        minutes_remaining = minutes_until_next_interval(self.timeframe_config.interval_minutes, self._clock())
        return minutes_remaining, highlighted_window(minutes_remaining, self.max_window_size, self.resolution)

    def _evaluate(self, symbol: str, minutes_remaining: float, window_size: int) -> ThresholdResult:
        window = find_window(self.window_ranges.get(symbol, []), window_size)
        return self.evaluator.evaluate(
            self.prices.get(symbol),
            self.reference_closes.get(symbol),
            window,
            minutes_remaining,
            self.timeframe_config.interval_minutes,
        )

    def check_notifications(self) -> List[str]:
        minutes_remaining, window_size = self._timing()
        met = {
            symbol: self._evaluate(symbol, minutes_remaining, window_size).notify_met
            for symbol in self.symbols
        }
        return self.notifications.observe(met, self.evaluator.notifications_enabled)

    def snapshot(self) -> DashboardSnapshot:
        minutes_remaining, window_size = self._timing()

        rows: List[SymbolSnapshot] = []
        for symbol in self.symbols:
            result = self._evaluate(symbol, minutes_remaining, window_size)
            rows.append(
                SymbolSnapshot(
                    symbol=symbol,
                    price=self.prices.get(symbol),
                    reference_close=self.reference_closes.get(symbol),
                    absolute_deviation=result.absolute_deviation,
                    percentage_deviation=result.percentage_deviation,
                    highlighted_window=window_size,
                    window_ranges=self.window_ranges.get(symbol, []),
                    flags=ThresholdFlags(
                        color=result.color,
                        wma_dots=result.wma_dots,
                        range_dots=result.range_dots,
                        yellow_met=result.yellow_met,
                        green_met=result.green_met,
                        wma_threshold=result.wma_threshold,
                        range_threshold=result.range_threshold,
                        notification_state=self.notifications.state(symbol),
                    ),
                )
            )

        return DashboardSnapshot(
            timeframe=self.timeframe,
            resolution=self.resolution,
            minutes_remaining=minutes_remaining,
            max_window_size=self.max_window_size,
            highlighted_window=window_size,
            poll_interval_ms=self.poll_state.current_interval_ms,
            rate_limited=self.poll_state.rate_limited,
            retry_after_seconds=self.poll_state.retry_after_seconds,
            error=self.error,
            symbols=rows,
        )
