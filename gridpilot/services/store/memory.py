"""In-memory performance store.

Backs local development and the test suite. Holds canonical values only;
raw provider payloads go through ``normalize`` before they are added.
"""

from datetime import datetime

from gridpilot.services.store.base import PerformanceStore
from gridpilot.services.store.types import (
    DriverLicense,
    Opportunity,
    RaceResult,
    RaceResultFilters,
    SessionType,
)


class InMemoryPerformanceStore(PerformanceStore):
    """Dictionary-backed store."""

    def __init__(
        self,
        results: list[RaceResult] | None = None,
        schedule: list[Opportunity] | None = None,
        licenses: dict[str, list[DriverLicense]] | None = None,
    ):
        self._results: list[RaceResult] = []
        self._schedule: list[Opportunity] = list(schedule or [])
        self._licenses: dict[str, list[DriverLicense]] = dict(licenses or {})
        self._last_sync: dict[str, datetime] = {}
        self.add_results(results or [])

    def add_results(self, results: list[RaceResult], synced_at: datetime | None = None) -> None:
        """Append results, keeping them in chronological order."""
        self._results.extend(results)
        self._results.sort(key=lambda r: (r.start_time, r.subsession_id))
        if synced_at is not None:
            for driver_id in {r.driver_id for r in results}:
                self._last_sync[driver_id] = synced_at

    def set_schedule(self, schedule: list[Opportunity]) -> None:
        self._schedule = list(schedule)

    def set_licenses(self, driver_id: str, licenses: list[DriverLicense]) -> None:
        self._licenses[driver_id] = list(licenses)

    async def list_race_results(
        self,
        driver_id: str,
        filters: RaceResultFilters | None = None,
    ) -> list[RaceResult]:
        filters = filters or RaceResultFilters()
        return [
            r for r in self._results
            if r.driver_id == driver_id and _matches(r, filters)
        ]

    async def list_population_results(
        self,
        series_id: int,
        track_id: int,
        since: datetime | None = None,
    ) -> list[RaceResult]:
        return [
            r for r in self._results
            if r.series_id == series_id
            and r.track_id == track_id
            and r.session_type == SessionType.RACE
            and (since is None or r.start_time >= since)
        ]

    async def list_schedule_entries(
        self, season_year: int, season_quarter: int
    ) -> list[Opportunity]:
        return [
            o for o in self._schedule
            if o.season_year == season_year and o.season_quarter == season_quarter
        ]

    async def get_last_sync_timestamp(self, driver_id: str) -> datetime | None:
        return self._last_sync.get(driver_id)

    async def list_driver_licenses(self, driver_id: str) -> list[DriverLicense]:
        return list(self._licenses.get(driver_id, []))


def _matches(result: RaceResult, filters: RaceResultFilters) -> bool:
    if filters.session_types is not None and result.session_type not in filters.session_types:
        return False
    if filters.series_id is not None and result.series_id != filters.series_id:
        return False
    if filters.track_id is not None and result.track_id != filters.track_id:
        return False
    if filters.start_date is not None and result.start_time < filters.start_date:
        return False
    if filters.end_date is not None and result.start_time > filters.end_date:
        return False
    return True
