import logging

from fastapi import FastAPI

from rangewatch.api.routes import router as api_router
from rangewatch.config import Settings, get_settings
from rangewatch.jobs.poller import PollingController
from rangewatch.providers.base import MarketDataProvider
from rangewatch.providers.loader import get_provider
from rangewatch.thresholds.engine import ThresholdEvaluator


def build_controller(settings: Settings, provider: MarketDataProvider) -> PollingController:
    evaluator = ThresholdEvaluator(
        multiplier=settings.multiplier,
        use_volatility=settings.use_volatility_ratio,
        yellow_threshold=settings.yellow_threshold,
        green_threshold=settings.green_threshold,
        min_max_volatility=settings.min_max_volatility,
        min_wma_volatility=settings.min_wma_volatility,
    )
    return PollingController(
        provider=provider,
        timeframe=settings.timeframe,
        history_hours=settings.history_hours,
        symbols=settings.symbols,
        evaluator=evaluator,
        poll_interval_ms=settings.poll_interval_ms,
        max_backoff_ms=settings.max_backoff_ms,
    )


def create_app(settings: Settings | None = None, provider: MarketDataProvider | None = None) -> FastAPI:
    settings = settings or get_settings()
    provider = provider or get_provider(settings)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)-16s | %(message)s",
    )

    app = FastAPI(title="Rangewatch API", version="0.1.0")
    app.include_router(api_router)
    app.state.settings = settings
    app.state.provider = provider
    app.state.controller = build_controller(settings, provider)

    @app.on_event("startup")
    async def _startup():
        # Price, close, candle (and for 4h/1d mode-check) loops
        app.state.controller.start()

    @app.on_event("shutdown")
    async def _shutdown():
        await app.state.controller.stop()
        await provider.close()

    @app.get("/health")
    def health():
        controller = app.state.controller
        return {
            "status": "ok",
            "app_env": settings.app_env,
            "provider_config": settings.provider,
            "provider_loaded": provider.__class__.__name__,
            "timeframe": controller.timeframe,
            "resolution": controller.resolution,
            "rate_limited": controller.poll_state.rate_limited,
        }

    return app
