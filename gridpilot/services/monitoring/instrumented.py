"""Performance store wrapper that times every query."""

from datetime import datetime

from gridpilot.services.monitoring.monitor import MetricCategory, PerformanceMonitor
from gridpilot.services.store.base import PerformanceStore
from gridpilot.services.store.types import (
    DriverLicense,
    Opportunity,
    RaceResult,
    RaceResultFilters,
)


class MonitoredPerformanceStore(PerformanceStore):
    """Records ``database_query_time`` for each call on the wrapped store."""

    def __init__(self, store: PerformanceStore, monitor: PerformanceMonitor):
        self.store = store
        self.monitor = monitor

    async def _timed(self, query: str, fn, *args, **kwargs):
        return await self.monitor.time_async(
            "database_query_time",
            MetricCategory.DATABASE,
            fn,
            *args,
            tags={"query": query},
            **kwargs,
        )

    async def list_race_results(
        self, driver_id: str, filters: RaceResultFilters | None = None
    ) -> list[RaceResult]:
        return await self._timed("list_race_results", self.store.list_race_results, driver_id, filters)

    async def list_population_results(
        self, series_id: int, track_id: int, since: datetime | None = None
    ) -> list[RaceResult]:
        return await self._timed(
            "list_population_results",
            self.store.list_population_results,
            series_id,
            track_id,
            since=since,
        )

    async def list_schedule_entries(self, season_year: int, season_quarter: int) -> list[Opportunity]:
        return await self._timed(
            "list_schedule_entries", self.store.list_schedule_entries, season_year, season_quarter
        )

    async def get_last_sync_timestamp(self, driver_id: str) -> datetime | None:
        return await self._timed(
            "get_last_sync_timestamp", self.store.get_last_sync_timestamp, driver_id
        )

    async def list_driver_licenses(self, driver_id: str) -> list[DriverLicense]:
        return await self._timed("list_driver_licenses", self.store.list_driver_licenses, driver_id)
