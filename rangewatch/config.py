# rangewatch/config.py
import os
from dataclasses import dataclass
from dotenv import load_dotenv

from rangewatch.thresholds.engine import NOTIFY_THRESHOLD_AUTO
from rangewatch.timeframes import TIMEFRAME_CONFIGS, HistoryHours

# Loads variables from a local .env file into environment variables (dev only).
load_dotenv()


@dataclass(frozen=True)
class Settings:
    # App config
    app_env: str
    log_level: str
    provider: str
    symbols: list[str]

    # Provider config (Binance)
    binance_base_url: str
    binance_timeout_seconds: float

    # Dashboard config
    timeframe: str
    history_hours: HistoryHours
    multiplier: float
    use_volatility_ratio: bool
    yellow_threshold: int
    green_threshold: int
    min_max_volatility: float
    min_wma_volatility: float

    # Polling
    poll_interval_ms: int
    max_backoff_ms: int


def _notify_threshold(name: str) -> int:
    raw = os.getenv(name, "0").strip().lower()
    if raw == "auto":
        return NOTIFY_THRESHOLD_AUTO
    value = int(raw)
    if value not in (0, 1, 2, 3, 4):
        raise ValueError(f"{name}={raw!r} must be 0-4 or 'auto'")
    return value


def _hours(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise RuntimeError(f"{name} must be positive")
    return value


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def get_settings() -> Settings:
    """
    Reads env vars and returns a Settings object.
    """
    timeframe = os.getenv("TIMEFRAME", "15m").strip().lower()
    if timeframe not in TIMEFRAME_CONFIGS:
        raise RuntimeError(
            f"TIMEFRAME={timeframe!r} is not supported. Expected one of: {', '.join(TIMEFRAME_CONFIGS)}"
        )

    symbols = [
        s.strip().upper()
        for s in os.getenv("SYMBOLS", "BTCUSDT,ETHUSDT,SOLUSDT,XRPUSDT").split(",")
        if s.strip()
    ]

    # 4h and 1d keep separate history for their hourly and minute modes.
    history_hours = HistoryHours(
        default=_hours("HISTORY_HOURS", "12"),
        four_hour_hourly=_hours("HISTORY_HOURS_4H_HOURLY", "168"),
        four_hour_minute=_hours("HISTORY_HOURS_4H_MINUTE", "12"),
        one_day_hourly=_hours("HISTORY_HOURS_1D_HOURLY", "168"),
        one_day_minute=_hours("HISTORY_HOURS_1D_MINUTE", "24"),
    )

    return Settings(
        app_env=os.getenv("APP_ENV", "local"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        provider=os.getenv("PROVIDER", "BINANCE"),
        symbols=symbols,
        binance_base_url=os.getenv("BINANCE_BASE_URL", "https://api.binance.com").rstrip("/"),
        binance_timeout_seconds=float(os.getenv("BINANCE_TIMEOUT_SECONDS", "10")),
        timeframe=timeframe,
        history_hours=history_hours,
        multiplier=float(os.getenv("MULTIPLIER", "100")),
        use_volatility_ratio=_flag("USE_VOLATILITY_RATIO"),
        yellow_threshold=_notify_threshold("YELLOW_THRESHOLD"),
        green_threshold=_notify_threshold("GREEN_THRESHOLD"),
        min_max_volatility=float(os.getenv("MIN_MAX_VOLATILITY", "0")),
        min_wma_volatility=float(os.getenv("MIN_WMA_VOLATILITY", "0")),
        poll_interval_ms=int(os.getenv("POLL_INTERVAL_MS", "5000")),
        max_backoff_ms=int(os.getenv("MAX_BACKOFF_MS", "60000")),
    )
