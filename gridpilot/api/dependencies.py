"""FastAPI dependencies for GridPilot."""

from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from gridpilot.config import get_settings
from gridpilot.models.base import session_factory
from gridpilot.services.monitoring import PerformanceMonitor
from gridpilot.services.recommendations import RecommendationCoordinator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    factory = session_factory()
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


def get_coordinator(request: Request) -> RecommendationCoordinator:
    """Coordinator created in the application lifespan."""
    return request.app.state.coordinator


def get_monitor(request: Request) -> PerformanceMonitor:
    """Performance monitor created in the application lifespan."""
    return request.app.state.monitor
