"""GridPilot FastAPI application.

Race recommendation service: ranks upcoming league races for a driver
from their historical results.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gridpilot import __version__
from gridpilot.api.routes import cache, health, monitoring, recommendations
from gridpilot.config import Settings, get_settings
from gridpilot.errors import GridPilotError
from gridpilot.services.analytics import AnalyticsAggregator
from gridpilot.services.monitoring import MonitoredPerformanceStore, PerformanceMonitor
from gridpilot.services.recommendations import CacheStore, RecommendationCoordinator
from gridpilot.services.recommendations.invalidation import InvalidationListener
from gridpilot.services.scoring import ScoringEngine
from gridpilot.services.store.base import PerformanceStore

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def build_coordinator(
    store: PerformanceStore,
    settings: Settings,
    monitor: PerformanceMonitor | None = None,
) -> RecommendationCoordinator:
    """Wire a coordinator from settings and defaults.yaml."""
    defaults = settings.load_defaults_config()
    season = None
    if settings.season_year and settings.season_quarter:
        season = (settings.season_year, settings.season_quarter)
    return RecommendationCoordinator(
        store=store,
        cache=CacheStore(ttl_seconds=settings.cache_ttl_seconds),
        aggregator=AnalyticsAggregator(store, config=defaults),
        engine=ScoringEngine(defaults.get("scoring") or None),
        monitor=monitor,
        waiter_timeout=settings.waiter_timeout_seconds,
        global_stats_ttl=settings.global_stats_ttl_seconds,
        season=season,
    )


def _default_coordinator(monitor: PerformanceMonitor) -> RecommendationCoordinator:
    from gridpilot.models.base import session_factory
    from gridpilot.services.store.sql import SqlPerformanceStore

    store = MonitoredPerformanceStore(SqlPerformanceStore(session_factory()), monitor)
    return build_coordinator(store, settings, monitor)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("starting_gridpilot", version=__version__)
    state = app.state
    if state.coordinator is None:
        state.coordinator = _default_coordinator(state.monitor)
    coordinator: RecommendationCoordinator = state.coordinator

    background = [
        asyncio.create_task(coordinator.run_cleanup(settings.cache_cleanup_interval_seconds))
    ]
    redis_client = None
    listener = None
    if state.listen_for_invalidations:
        redis_client = redis.from_url(settings.redis_url)
        listener = InvalidationListener(redis_client, coordinator, settings.invalidation_channel)
        background.append(asyncio.create_task(listener.run()))

    yield

    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    if listener is not None:
        await listener.close()
    await coordinator.shutdown()
    if redis_client is not None:
        await redis_client.aclose()
    logger.info("shutting_down_gridpilot")


def create_app(
    coordinator: RecommendationCoordinator | None = None,
    monitor: PerformanceMonitor | None = None,
    listen_for_invalidations: bool = True,
) -> FastAPI:
    """
    Build the application.

    Without a coordinator one is wired to the SQL performance store when
    the app starts.
    """
    app = FastAPI(
        title="GridPilot",
        description="Race recommendations ranked from a driver's own history",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.monitor = monitor or (coordinator.monitor if coordinator else None) or PerformanceMonitor()
    app.state.coordinator = coordinator
    app.state.listen_for_invalidations = listen_for_invalidations

    app.include_router(health.router)
    app.include_router(recommendations.router)
    app.include_router(cache.router)
    app.include_router(monitoring.router)

    @app.middleware("http")
    async def record_api_timing(request: Request, call_next):
        if not request.url.path.startswith("/api/"):
            return await call_next(request)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            request.app.state.monitor.record_api_metric(
                request.url.path, request.method, (time.perf_counter() - start) * 1000, 500
            )
            raise
        request.app.state.monitor.record_api_metric(
            request.url.path,
            request.method,
            (time.perf_counter() - start) * 1000,
            response.status_code,
        )
        return response

    @app.exception_handler(GridPilotError)
    async def domain_error_handler(request: Request, exc: GridPilotError):
        logger.error("server_error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    return app


app = create_app()
