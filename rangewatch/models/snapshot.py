from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from rangewatch.models.market import WindowRange


class ThresholdFlags(BaseModel):
    """
    Highlight + notification flags for one symbol.

    color: "green" (past the range threshold), "yellow" (past the wma threshold) or None
    wma_dots/range_dots: 0-4 progress towards each threshold
    yellow_met/green_met: per-colour notification condition
    notification_state: "none", "tick" (notified) or "noted" (acknowledged)
    """

    color: Optional[str] = None
    wma_dots: int = 0
    range_dots: int = 0
    yellow_met: bool = False
    green_met: bool = False
    wma_threshold: float = 0.0
    range_threshold: float = 0.0
    notification_state: str = "none"


class SymbolSnapshot(BaseModel):
    symbol: str
    price: Optional[str] = None
    reference_close: Optional[str] = None
    absolute_deviation: Optional[float] = None
    percentage_deviation: Optional[float] = None
    highlighted_window: int
    window_ranges: List[WindowRange] = []
    flags: ThresholdFlags = ThresholdFlags()


class DashboardSnapshot(BaseModel):
    """
    Everything the display layer needs for one render.

    error/rate_limited come from the live-price loop only; last known values
    keep being reported while they are set.
    """

    timeframe: str
    resolution: str
    minutes_remaining: float
    max_window_size: int
    highlighted_window: int
    poll_interval_ms: int
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    error: Optional[str] = None
    symbols: List[SymbolSnapshot] = []
