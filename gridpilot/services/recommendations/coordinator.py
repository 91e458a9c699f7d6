"""Batch/cache coordinator.

Entry point for recommendation requests. Serves ranked lists from the
cache store, runs at most one computation per cache key and coalesces
concurrent callers onto it.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from gridpilot.errors import CacheCorruption, ComputationTimeout, InvalidOpportunity
from gridpilot.services.analytics.aggregator import AnalyticsAggregator
from gridpilot.services.analytics.profile import GlobalStats
from gridpilot.services.monitoring.monitor import MetricCategory, PerformanceMonitor
from gridpilot.services.recommendations.cache import CacheKey, CacheStore
from gridpilot.services.recommendations.filters import (
    RecommendationFilters,
    rank,
    split_eligible,
)
from gridpilot.services.scoring.engine import ScoredOpportunity, ScoringEngine
from gridpilot.services.store.base import PerformanceStore
from gridpilot.services.store.types import Opportunity

logger = structlog.get_logger(__name__)


def current_season(now: datetime | None = None) -> tuple[int, int]:
    """Calendar year and quarter for a timestamp (defaults to now, UTC)."""
    now = now or datetime.now(timezone.utc)
    return now.year, (now.month - 1) // 3 + 1


@dataclass(frozen=True)
class RankedList:
    """Result of one computation, as stored in the cache."""

    driver_id: str
    recommendations: tuple[ScoredOpportunity, ...]
    candidate_keys: frozenset[str]
    skipped_opportunities: int
    ineligible_opportunities: int
    last_sync: datetime | None
    computed_at: datetime
    compute_time_ms: float


@dataclass(frozen=True)
class RecommendationMetadata:
    cache_status: str
    cache_hit_rate: float
    processing_time_ms: float
    skipped_opportunities: int
    last_sync: datetime | None
    mode: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "cache_status": self.cache_status,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "processing_time_ms": round(self.processing_time_ms, 2),
            "skipped_opportunities": self.skipped_opportunities,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "mode": self.mode,
        }


@dataclass(frozen=True)
class RecommendationResponse:
    recommendations: tuple[ScoredOpportunity, ...]
    metadata: RecommendationMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "recommendations": [s.to_dict() for s in self.recommendations],
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class _MemoEntry:
    stats: GlobalStats
    stored_at: float = field(default=0.0)


class RecommendationCoordinator:
    """
    Orchestrates aggregation, scoring and caching for recommendation requests.

    Args:
        store: Performance store (the only I/O dependency)
        cache: Injected cache store
        aggregator: Analytics aggregator (built on ``store`` if omitted)
        engine: Scoring engine (default config if omitted)
        monitor: Optional performance monitor
        waiter_timeout: Seconds a caller waits on an in-flight computation
        global_stats_ttl: Seconds a memoized population baseline is reused
        season: Fixed (year, quarter) to schedule from; current quarter if None
        clock: Monotonic time source shared with the memo, injectable for tests
    """

    def __init__(
        self,
        store: PerformanceStore,
        cache: CacheStore,
        aggregator: AnalyticsAggregator | None = None,
        engine: ScoringEngine | None = None,
        monitor: PerformanceMonitor | None = None,
        waiter_timeout: float = 30.0,
        global_stats_ttl: float = 600.0,
        season: tuple[int, int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.cache = cache
        self.aggregator = aggregator or AnalyticsAggregator(store)
        self.engine = engine or ScoringEngine()
        self.monitor = monitor
        self.waiter_timeout = waiter_timeout
        self.global_stats_ttl = global_stats_ttl
        self.season = season
        self.clock = clock

        self._global_stats: dict[str, _MemoEntry] = {}
        self._global_stats_generation = 0
        self._tasks: set[asyncio.Task] = set()

    # Requests

    async def get_recommendations(
        self,
        driver_id: str,
        filters: RecommendationFilters | None = None,
    ) -> RecommendationResponse:
        """
        Ranked recommendations for a driver.

        Raises:
            DataUnavailable: the store failed during computation
            ComputationTimeout: this caller's wait on the computation timed out
        """
        filters = filters or RecommendationFilters()
        key = CacheKey(driver_id, filters.cache_hash())
        started = time.perf_counter()

        try:
            status, ranked = await self._resolve(key, driver_id, filters)
        except CacheCorruption as e:
            logger.error("cache_corruption", key=str(key), error=str(e))
            self.cache.reset(key)
            status, ranked = await self._resolve(key, driver_id, filters)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if self.monitor is not None:
            self.monitor.record_cache_metric(status)

        logger.info(
            "recommendations_served",
            driver_id=driver_id,
            cache_status=status,
            count=len(ranked.recommendations),
            processing_time_ms=round(elapsed_ms, 2),
        )
        return RecommendationResponse(
            recommendations=ranked.recommendations,
            metadata=RecommendationMetadata(
                cache_status=status,
                cache_hit_rate=self.cache.stats.hit_rate,
                processing_time_ms=elapsed_ms,
                skipped_opportunities=ranked.skipped_opportunities,
                last_sync=ranked.last_sync,
                mode=filters.mode.value,
            ),
        )

    async def _resolve(
        self,
        key: CacheKey,
        driver_id: str,
        filters: RecommendationFilters,
    ) -> tuple[str, RankedList]:
        entry = self.cache.get(key)
        if entry is not None:
            self.cache.stats.hits += 1
            return "hit", entry.value

        # No await between the registry check and begin()
        future = self.cache.inflight(key)
        if future is not None:
            self.cache.stats.coalesced += 1
            status = "coalesced"
        else:
            self.cache.stats.misses += 1
            future = self._start(key, driver_id, filters)
            status = "miss"

        return status, await self._wait(key, future)

    def _start(
        self, key: CacheKey, driver_id: str, filters: RecommendationFilters
    ) -> asyncio.Future:
        future, generation = self.cache.begin(key)
        task = asyncio.create_task(self._run(key, future, generation, driver_id, filters))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    async def _run(
        self,
        key: CacheKey,
        future: asyncio.Future,
        generation: int,
        driver_id: str,
        filters: RecommendationFilters,
    ) -> None:
        try:
            ranked = await self._compute(driver_id, filters)
        except asyncio.CancelledError:
            self.cache.abandon(key, future)
            raise
        except Exception as e:
            logger.error(
                "recommendation_computation_failed",
                key=str(key),
                error=str(e),
                error_type=type(e).__name__,
            )
            self.cache.fail(key, future, e)
            return
        self.cache.complete(key, future, generation, ranked)

    async def _wait(self, key: CacheKey, future: asyncio.Future) -> RankedList:
        try:
            return await asyncio.wait_for(asyncio.shield(future), self.waiter_timeout)
        except asyncio.TimeoutError:
            logger.warning("recommendation_wait_timeout", key=str(key), timeout=self.waiter_timeout)
            raise ComputationTimeout(str(key), self.waiter_timeout) from None

    async def prefetch(self, driver_id: str) -> bool:
        """
        Warm the default-filter key for a driver.

        Returns False when the key was already fresh or being computed.
        """
        key = CacheKey(driver_id, RecommendationFilters().cache_hash())
        if self.cache.get(key) is not None:
            return False
        future = self.cache.inflight(key)
        if future is not None:
            return False
        future = self._start(key, driver_id, RecommendationFilters())
        await asyncio.shield(future)
        logger.info("recommendations_prefetched", driver_id=driver_id)
        return True

    # Computation

    async def _compute(self, driver_id: str, filters: RecommendationFilters) -> RankedList:
        started = time.perf_counter()

        profile = await self.aggregator.build_profile(driver_id)
        year, quarter = self.season or current_season()
        opportunities = await self.store.list_schedule_entries(year, quarter)
        licenses = await self.store.list_driver_licenses(driver_id)
        eligible, ineligible = split_eligible(opportunities, licenses)
        # Category rates pool the whole schedule, not just what this driver may enter
        baselines = self.aggregator.with_category_rates(
            await self._global_stats_for(opportunities), opportunities
        )

        scored: list[ScoredOpportunity] = []
        skipped = 0
        neutral = GlobalStats.neutral(self.aggregator.global_config.get("defaults", {}))
        for opp in eligible:
            try:
                scored.append(
                    self.engine.score(profile, baselines.get(opp.key, neutral), opp, mode=filters.mode)
                )
            except InvalidOpportunity as e:
                skipped += 1
                logger.warning("opportunity_skipped", driver_id=driver_id, key=e.opportunity_key, error=str(e))

        ranked = rank(scored)
        last_sync = await self.store.get_last_sync_timestamp(driver_id)
        elapsed_ms = (time.perf_counter() - started) * 1000

        if self.monitor is not None:
            self.monitor.record_metric(
                "recommendation_compute_time",
                elapsed_ms,
                "ms",
                MetricCategory.API,
                {"driver_id": driver_id},
            )

        logger.info(
            "recommendations_computed",
            driver_id=driver_id,
            season=f"{year}Q{quarter}",
            mode=filters.mode.value,
            candidates=len(opportunities),
            eligible=len(eligible),
            scored=len(scored),
            skipped=skipped,
            compute_time_ms=round(elapsed_ms, 2),
        )
        return RankedList(
            driver_id=driver_id,
            recommendations=tuple(filters.apply(ranked)),
            candidate_keys=frozenset(s.opportunity.key for s in ranked),
            skipped_opportunities=skipped,
            ineligible_opportunities=len(ineligible),
            last_sync=last_sync,
            computed_at=datetime.now(timezone.utc),
            compute_time_ms=elapsed_ms,
        )

    async def _global_stats_for(self, opportunities: list[Opportunity]) -> dict[str, GlobalStats]:
        """Memoized population baselines, fetching only stale or missing keys."""
        now = self.clock()
        fresh: dict[str, GlobalStats] = {}
        missing: list[Opportunity] = []
        for opp in opportunities:
            if opp.series_id is None or opp.track_id is None:
                continue
            memo = self._global_stats.get(opp.key)
            if memo is not None and now - memo.stored_at < self.global_stats_ttl:
                fresh[opp.key] = memo.stats
            else:
                missing.append(opp)

        if missing:
            generation = self._global_stats_generation
            fetched = await self.aggregator.build_global_stats(missing)
            stored_at = self.clock()
            if generation == self._global_stats_generation:
                for k, stats in fetched.items():
                    self._global_stats[k] = _MemoEntry(stats=stats, stored_at=stored_at)
            fresh.update(fetched)
        return fresh

    # Invalidation and maintenance

    def invalidate(
        self,
        driver_id: str | None = None,
        opportunity_key: str | None = None,
        all: bool = False,
    ) -> int:
        """
        Drop cached lists for a driver, an opportunity, or everything.

        Exactly one target must be given. Returns the number of cached
        lists dropped.
        """
        targets = sum([driver_id is not None, opportunity_key is not None, bool(all)])
        if targets != 1:
            raise ValueError("invalidate takes exactly one of driver_id, opportunity_key, all")

        if all:
            dropped = self.cache.invalidate(lambda key, entry: True)
            self._global_stats.clear()
            self._global_stats_generation += 1
        elif driver_id is not None:
            dropped = self.cache.invalidate(lambda key, entry: key.driver_id == driver_id)
        else:
            self._global_stats.pop(opportunity_key, None)
            self._global_stats_generation += 1
            dropped = self.cache.invalidate(
                lambda key, entry: entry is None or opportunity_key in entry.value.candidate_keys
            )

        logger.info(
            "cache_invalidated",
            driver_id=driver_id,
            opportunity_key=opportunity_key,
            all=all,
            dropped=dropped,
        )
        return dropped

    def get_cache_metrics(self) -> dict[str, Any]:
        metrics = self.cache.metrics()
        metrics["global_stats_entries"] = len(self._global_stats)
        return metrics

    def clear_caches(self) -> None:
        self.cache.clear()
        self._global_stats.clear()
        self._global_stats_generation += 1
        logger.info("caches_cleared")

    def purge_expired(self) -> int:
        removed = self.cache.purge_expired()
        now = self.clock()
        stale = [k for k, m in self._global_stats.items() if now - m.stored_at >= self.global_stats_ttl]
        for k in stale:
            del self._global_stats[k]
        if removed or stale:
            logger.info("cache_cleanup", removed=removed, global_stats_removed=len(stale))
        return removed

    async def run_cleanup(self, interval: float) -> None:
        """Purge expired entries every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.purge_expired()

    async def shutdown(self) -> None:
        """Cancel computations still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
