from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set, Tuple

from rangewatch.models.market import WindowRange

log = logging.getLogger("thresholds")

# Notification target meaning "scale the bar by the time left in the interval".
NOTIFY_THRESHOLD_AUTO = -1

# Dot score cut-offs, highest first: deviation/threshold must exceed the cut-off.
DOT_LEVELS = ((1.0, 4), (0.75, 3), (0.5, 2), (0.25, 1))

YELLOW = "yellow"
GREEN = "green"


# -------------------------
# Deviation
# -------------------------
def _parse(price: Optional[str]) -> Optional[float]:
    if price is None or price == "":
        return None
    try:
        return float(price)
    except ValueError:
        return None


def absolute_deviation(price: Optional[str], reference_close: Optional[str]) -> Optional[float]:
    """|price - reference_close|, or None when either side is missing."""
    current = _parse(price)
    close = _parse(reference_close)
    if current is None or close is None:
        return None
    return abs(current - close)


def percentage_deviation(price: Optional[str], reference_close: Optional[str]) -> Optional[float]:
    """Signed percent move from the reference close."""
    current = _parse(price)
    close = _parse(reference_close)
    if current is None or close is None or close == 0:
        return None
    return (current - close) / close * 100


# -------------------------
# Thresholds
# -------------------------
def resolve_ratios(window: WindowRange, multiplier: float, use_volatility: bool) -> Tuple[float, float]:
    """
    (wma_ratio, range_ratio) applied to the window's wma and range.

    Fixed mode uses multiplier/100 for both. Volatility mode uses the window's
    measured volatility, floored at 1.
    """
    if use_volatility:
        return max(window.wma_volatility, 1.0), max(window.max_volatility, 1.0)
    ratio = multiplier / 100
    return ratio, ratio


def highlight_color(
    deviation: Optional[float],
    wma_threshold: float,
    range_threshold: float,
) -> Optional[str]:
    """Green past the range threshold, else yellow past the wma threshold."""
    if deviation is None:
        return None
    if wma_threshold == 0 and range_threshold == 0:
        return None
    if deviation > range_threshold:
        return GREEN
    if deviation > wma_threshold:
        return YELLOW
    return None


def dot_score(deviation: Optional[float], threshold: float) -> int:
    """0-4 progress of deviation towards (and past) a threshold."""
    if not deviation or threshold <= 0:
        return 0
    ratio = deviation / threshold
    for cutoff, dots in DOT_LEVELS:
        if ratio > cutoff:
            return dots
    return 0


def notification_met(
    deviation: Optional[float],
    threshold: float,
    target: int,
    time_left_fraction: float,
    max_volatility: float = 0.0,
    wma_volatility: float = 0.0,
    min_max_volatility: float = 0.0,
    min_wma_volatility: float = 0.0,
) -> bool:
    """
    Whether one colour's notification condition holds.

    target 0 disables the filter (always met). NOTIFY_THRESHOLD_AUTO compares
    the deviation against the threshold scaled by the fraction of the
    interval still left, so the bar drops to zero at the close; a zero
    threshold (no stats) never meets it. Any other
    target is a minimum dot score. The volatility gates (0 = off) can veto
    an otherwise met result.
    """
    if target == 0:
        met = True
    elif target == NOTIFY_THRESHOLD_AUTO:
        met = deviation is not None and threshold > 0 and deviation >= threshold * time_left_fraction
    else:
        met = dot_score(deviation, threshold) >= target

    if not met:
        return False
    if min_max_volatility > 0 and max_volatility < min_max_volatility:
        return False
    if min_wma_volatility > 0 and wma_volatility < min_wma_volatility:
        return False
    return True


def time_left_fraction(minutes_remaining: float, interval_minutes: int) -> float:
    if interval_minutes <= 0:
        return 0.0
    return min(1.0, max(0.0, minutes_remaining / interval_minutes))


# -------------------------
# Evaluator
# -------------------------
@dataclass(frozen=True)
class ThresholdResult:
    color: Optional[str]
    wma_dots: int
    range_dots: int
    yellow_met: bool
    green_met: bool
    absolute_deviation: Optional[float]
    percentage_deviation: Optional[float]
    wma_threshold: float
    range_threshold: float

    @property
    def notify_met(self) -> bool:
        return self.yellow_met and self.green_met


@dataclass(frozen=True)
class ThresholdEvaluator:
    """
    Turns live price + the highlighted window's stats into user-facing flags.

    Read-only: it consumes published WindowRange records and never touches buffers.
    """
    multiplier: float = 100.0
    use_volatility: bool = False
    yellow_threshold: int = 0
    green_threshold: int = 0
    min_max_volatility: float = 0.0
    min_wma_volatility: float = 0.0

    def evaluate(
        self,
        price: Optional[str],
        reference_close: Optional[str],
        window: Optional[WindowRange],
        minutes_remaining: float,
        interval_minutes: int,
    ) -> ThresholdResult:
        deviation = absolute_deviation(price, reference_close)
        pct = percentage_deviation(price, reference_close)

        has_stats = not (window is None or window.range == 0 or not _parse(reference_close))
        if not has_stats:
            wma_threshold = range_threshold = 0.0
            max_vol = wma_vol = 0.0
        else:
            wma_ratio, range_ratio = resolve_ratios(window, self.multiplier, self.use_volatility)
            wma_threshold = window.wma * wma_ratio
            range_threshold = window.range * range_ratio
            max_vol, wma_vol = window.max_volatility, window.wma_volatility

        fraction = time_left_fraction(minutes_remaining, interval_minutes)
        gates = dict(
            max_volatility=max_vol,
            wma_volatility=wma_vol,
            min_max_volatility=self.min_max_volatility,
            min_wma_volatility=self.min_wma_volatility,
        )

        if has_stats:
            yellow_met = notification_met(deviation, wma_threshold, self.yellow_threshold, fraction, **gates)
            green_met = notification_met(deviation, range_threshold, self.green_threshold, fraction, **gates)
        else:
            # Without window stats only a disabled target counts as met.
            yellow_met = self.yellow_threshold == 0
            green_met = self.green_threshold == 0

        return ThresholdResult(
            color=highlight_color(deviation, wma_threshold, range_threshold),
            wma_dots=dot_score(deviation, wma_threshold),
            range_dots=dot_score(deviation, range_threshold),
            yellow_met=yellow_met,
            green_met=green_met,
            absolute_deviation=deviation,
            percentage_deviation=pct,
            wma_threshold=wma_threshold,
            range_threshold=range_threshold,
        )

    @property
    def notifications_enabled(self) -> bool:
        return not (self.yellow_threshold == 0 and self.green_threshold == 0)


# -------------------------
# Notification edge detection
# -------------------------
def _log_notification(symbol: str, title: str, body: str) -> None:
    log.info("NOTIFY symbol=%s title=%s body=%s", symbol, title, body)


@dataclass
class NotificationTracker:
    """
    Fires once per symbol when its combined yellow+green condition turns on.

    - the first observation only records state
    - nothing fires while notifications are disabled (both targets 0)
    - a symbol the user acknowledged ("noted") is not re-notified until the
      acknowledgement is cleared by a second acknowledge()
    """
    label: str
    on_notify: Callable[[str, str, str], None] = _log_notification
    previous: Dict[str, bool] = field(default_factory=dict)
    notified: Set[str] = field(default_factory=set)
    noted: Set[str] = field(default_factory=set)
    primed: bool = False

    def observe(self, met: Dict[str, bool], enabled: bool) -> list[str]:
        """Feed the latest met flags; returns the symbols notified this time."""
        fired: list[str] = []
        if self.primed and enabled:
            for symbol, now_met in met.items():
                was_met = self.previous.get(symbol, False)
                if now_met and not was_met and symbol not in self.noted:
                    self.on_notify(symbol, f"{symbol} {self.label}", "Deviation exceeds expected range")
                    self.notified.add(symbol)
                    fired.append(symbol)

        self.primed = True
        self.previous = dict(met)
        return fired

    def acknowledge(self, symbol: str) -> str:
        """Toggle the user's acknowledgement; returns the new state."""
        if symbol in self.noted:
            self.noted.discard(symbol)
            self.notified.discard(symbol)
        else:
            self.noted.add(symbol)
        return self.state(symbol)

    def state(self, symbol: str) -> str:
        if symbol not in self.notified:
            return "none"
        return "noted" if symbol in self.noted else "tick"

    def forget(self, symbol: str) -> None:
        self.previous.pop(symbol, None)
        self.notified.discard(symbol)
        self.noted.discard(symbol)
