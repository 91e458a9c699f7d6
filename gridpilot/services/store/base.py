"""Performance store query contract.

The store is the only blocking dependency of the recommendation pipeline.
Implementations must raise ``DataUnavailable`` when the backing storage
cannot be reached; an empty result is never an error.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from gridpilot.services.store.types import (
    DriverLicense,
    Opportunity,
    RaceResult,
    RaceResultFilters,
)


class PerformanceStore(ABC):
    """Read-only view over historical results and the race schedule."""

    @abstractmethod
    async def list_race_results(
        self,
        driver_id: str,
        filters: RaceResultFilters | None = None,
    ) -> list[RaceResult]:
        """Results for one driver, oldest first.

        With no filters only race sessions are returned; use
        ``RaceResultFilters.all_sessions()`` for every session type.
        """

    @abstractmethod
    async def list_population_results(
        self,
        series_id: int,
        track_id: int,
        since: datetime | None = None,
    ) -> list[RaceResult]:
        """Race-session results from every driver at a series/track."""

    @abstractmethod
    async def list_schedule_entries(
        self, season_year: int, season_quarter: int
    ) -> list[Opportunity]:
        """Schedule entries for a season."""

    @abstractmethod
    async def get_last_sync_timestamp(self, driver_id: str) -> datetime | None:
        """When the driver's history was last synced, if ever."""

    @abstractmethod
    async def list_driver_licenses(self, driver_id: str) -> list[DriverLicense]:
        """The driver's licenses; empty when unknown."""
