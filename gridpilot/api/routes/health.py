"""Liveness and readiness endpoints."""

from datetime import datetime, timezone

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from gridpilot import __version__
from gridpilot.api.dependencies import get_coordinator, get_db, get_redis
from gridpilot.services.recommendations import RecommendationCoordinator

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime


class ReadyCheck(BaseModel):
    """Outcome of probing one dependency."""

    status: str
    message: str | None = None


class ReadyResponse(BaseModel):
    ready: bool
    checks: dict[str, ReadyCheck]


@router.get("/health", response_model=HealthResponse)
async def health():
    """The process is up and serving requests."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/ready", response_model=ReadyResponse)
async def ready(
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    coordinator: RecommendationCoordinator = Depends(get_coordinator),
):
    """
    Probe what a recommendation request depends on.

    Only the performance store decides readiness. Without Redis the process
    still serves recommendations but misses invalidations from sync workers.
    """
    checks: dict[str, ReadyCheck] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["performance_store"] = ReadyCheck(status="ok")
    except Exception as e:
        checks["performance_store"] = ReadyCheck(status="error", message=str(e))

    try:
        await redis_client.ping()
        checks["invalidation_channel"] = ReadyCheck(status="ok")
    except Exception as e:
        checks["invalidation_channel"] = ReadyCheck(status="warning", message=str(e))

    metrics = coordinator.get_cache_metrics()
    checks["recommendation_cache"] = ReadyCheck(
        status="ok",
        message=f"{metrics['size']} cached, {metrics['in_flight']} computing",
    )

    return ReadyResponse(
        ready=checks["performance_store"].status == "ok",
        checks=checks,
    )
