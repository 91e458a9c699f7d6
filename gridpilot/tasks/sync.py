"""Sync notification tasks.

Whatever syncs a driver's results or a season schedule calls these after
persisting, so every API process drops the recommendations that depend on
the changed data.
"""

import asyncio
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from gridpilot.config import get_settings
from gridpilot.models.base import get_task_session
from gridpilot.services.recommendations.invalidation import (
    InvalidationMessage,
    publish_invalidation,
)
from gridpilot.services.store.persistence import persist_race_results, persist_schedule
from gridpilot.tasks import celery_app

logger = structlog.get_logger(__name__)


async def _publish(message: InvalidationMessage) -> int:
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        return await publish_invalidation(client, settings.invalidation_channel, message)
    finally:
        await client.aclose()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=10)
def results_synced(self, driver_id: str, prefetch: bool = True):
    """Invalidate a driver's recommendations after new results were stored."""
    try:
        message = InvalidationMessage.for_driver(driver_id, prefetch=prefetch)
        receivers = asyncio.run(_publish(message))
    except RedisError as e:
        logger.warning("invalidation_publish_failed", driver_id=driver_id, error=str(e))
        raise self.retry(exc=e)
    return {"driver_id": driver_id, "receivers": receivers}


@celery_app.task(bind=True, max_retries=3, default_retry_delay=10)
def schedule_synced(self):
    """Invalidate every cached recommendation after a schedule update."""
    try:
        receivers = asyncio.run(_publish(InvalidationMessage.for_all()))
    except RedisError as e:
        logger.warning("invalidation_publish_failed", scope="all", error=str(e))
        raise self.retry(exc=e)
    return {"receivers": receivers}


@celery_app.task(bind=True, soft_time_limit=120, time_limit=150)
def ingest_race_results(self, driver_id: str, payloads: list[dict[str, Any]], prefetch: bool = True):
    """Persist raw result payloads for a driver, then notify API processes."""
    stored = asyncio.run(_ingest_race_results_async(driver_id, payloads))
    results_synced.delay(driver_id, prefetch=prefetch)
    return {"driver_id": driver_id, "stored": stored}


async def _ingest_race_results_async(driver_id: str, payloads: list[dict[str, Any]]) -> int:
    async with get_task_session() as session:
        return await persist_race_results(session, driver_id, payloads)


@celery_app.task(bind=True, soft_time_limit=120, time_limit=150)
def ingest_schedule(self, payloads: list[dict[str, Any]], season_year: int, season_quarter: int):
    """Persist a season schedule, then notify API processes."""
    stored = asyncio.run(_ingest_schedule_async(payloads, season_year, season_quarter))
    schedule_synced.delay()
    return {"season_year": season_year, "season_quarter": season_quarter, "stored": stored}


async def _ingest_schedule_async(
    payloads: list[dict[str, Any]], season_year: int, season_quarter: int
) -> int:
    async with get_task_session() as session:
        return await persist_schedule(session, payloads, season_year, season_quarter)
