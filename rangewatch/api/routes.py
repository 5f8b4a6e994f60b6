from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from rangewatch.jobs.poller import PollingController
from rangewatch.models.snapshot import DashboardSnapshot, SymbolSnapshot

router = APIRouter()

# Max age before a buffer counts as stale, per resolution.
FRESHNESS_SECONDS = {
    "1m": 3 * 60,
    "1h": 90 * 60,
}


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _controller(request: Request) -> PollingController:
    return request.app.state.controller


@router.get("/snapshot", response_model=DashboardSnapshot)
def snapshot(request: Request):
    """
    Everything the display needs:
    - per symbol: live price, reference close, window ranges, flags
    - the live-price loop's error / rate limit state
    """
    return _controller(request).snapshot()


@router.get("/snapshot/{ticker}", response_model=SymbolSnapshot)
def symbol_snapshot(ticker: str, request: Request):
    symbol = ticker.upper()
    for row in _controller(request).snapshot().symbols:
        if row.symbol == symbol:
            return row
    raise HTTPException(status_code=404, detail=f"{symbol} is not tracked")


@router.get("/buffers")
def buffers(request: Request):
    """
    Buffer status per tracked symbol for the active resolution:
    - candle count vs the configured limit
    - last merge timestamp + simple freshness flag
    """
    controller = _controller(request)
    resolution = controller.resolution
    max_age = FRESHNESS_SECONDS[resolution]

    status = {}
    for symbol in controller.symbols:
        candles = controller.store.get_history(symbol, resolution)
        status[symbol] = {
            "candles": len(candles),
            "first_open_time": candles[0].open_time if candles else None,
            "last_open_time": candles[-1].open_time if candles else None,
            "last_updated": iso(controller.store.get_last_updated(symbol, resolution)),
            "fresh": controller.store.is_fresh(symbol, resolution, max_age),
            "cache_entries": len(controller.store.get_cache(symbol, resolution)),
        }

    return {
        "resolution": resolution,
        "candle_limit": controller.buffer_limit(),
        "max_age_seconds": max_age,
        "symbols": status,
    }


@router.post("/symbols")
def add_symbol(request: Request, ticker: str = Query(..., description="Trading pair, e.g. BTCUSDT")):
    controller = _controller(request)
    added = controller.track(ticker)
    return {"ok": True, "added": added, "symbols": controller.symbols}


@router.delete("/symbols")
def remove_symbol(request: Request, ticker: str = Query(..., description="Trading pair, e.g. BTCUSDT")):
    controller = _controller(request)
    removed = controller.untrack(ticker)
    if not removed:
        raise HTTPException(status_code=404, detail=f"{ticker.upper()} is not tracked")
    return {"ok": True, "symbols": controller.symbols}


@router.post("/symbols/reorder")
def reorder_symbols(
    request: Request,
    from_index: int = Query(..., ge=0),
    to_index: int = Query(..., ge=0),
):
    controller = _controller(request)
    try:
        controller.reorder(from_index, to_index)
    except IndexError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "symbols": controller.symbols}


@router.post("/notifications/{ticker}/ack")
def acknowledge_notification(ticker: str, request: Request):
    """Toggle the user's acknowledgement of a symbol's notification."""
    controller = _controller(request)
    symbol = ticker.upper()
    if symbol not in controller.symbols:
        raise HTTPException(status_code=404, detail=f"{symbol} is not tracked")
    return {"ok": True, "symbol": symbol, "state": controller.notifications.acknowledge(symbol)}


@router.post("/dev/refresh_candles")
async def dev_refresh_candles(request: Request, full: bool = Query(False, description="Force a full refetch")):
    """
    Dev-only helper:
    Run one candle refresh for every tracked symbol right now.
    """
    controller = _controller(request)
    await controller.poll_candles(force_full=full)
    return {
        "ok": True,
        "resolution": controller.resolution,
        "stored": {s: len(controller.store.get_history(s, controller.resolution)) for s in controller.symbols},
    }
