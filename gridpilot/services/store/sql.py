"""SQLAlchemy-backed performance store."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gridpilot.errors import DataUnavailable
from gridpilot.models.domain import (
    DriverLicenseRecord,
    DriverSync,
    RaceResultRecord,
    ScheduleEntryRecord,
)
from gridpilot.services.store.base import PerformanceStore
from gridpilot.services.store.normalize import WEEKDAYS, parse_timestamp
from gridpilot.services.store.types import (
    Category,
    DriverLicense,
    LicenseLevel,
    Opportunity,
    RaceResult,
    RaceResultFilters,
    SessionType,
    TimeSlot,
)

logger = structlog.get_logger(__name__)


def record_to_result(row: RaceResultRecord) -> RaceResult:
    """Convert a stored row to the canonical RaceResult."""
    return RaceResult(
        driver_id=row.driver_id,
        subsession_id=row.subsession_id,
        series_id=row.series_id,
        series_name=row.series_name,
        track_id=row.track_id,
        track_name=row.track_name,
        category=Category.normalize(row.category),
        session_type=SessionType(row.session_type),
        start_time=parse_timestamp(row.start_time),
        start_position=row.start_position,
        finish_position=row.finish_position,
        incidents=row.incidents or 0,
        strength_of_field=row.strength_of_field,
        race_length_minutes=row.race_length_minutes,
        finished=bool(row.finished),
        season_year=row.season_year,
        season_quarter=row.season_quarter,
        old_safety_rating=row.old_safety_rating,
        new_safety_rating=row.new_safety_rating,
    )


def record_to_opportunity(row: ScheduleEntryRecord) -> Opportunity:
    """Convert a stored schedule row to an Opportunity."""
    slots = []
    for raw in row.time_slots or []:
        start = parse_timestamp(raw)
        slots.append(TimeSlot(start_time=start, weekday=WEEKDAYS[start.weekday()]))
    return Opportunity(
        series_id=row.series_id,
        series_name=row.series_name,
        track_id=row.track_id,
        track_name=row.track_name,
        license_required=LicenseLevel.normalize(row.license_required),
        category=Category.normalize(row.category),
        season_year=row.season_year,
        season_quarter=row.season_quarter,
        race_week=row.race_week,
        race_length_minutes=float(row.race_length_minutes or 0),
        has_open_setup=bool(row.has_open_setup),
        time_slots=tuple(sorted(slots, key=lambda s: s.start_time)),
    )


class SqlPerformanceStore(PerformanceStore):
    """
    Performance store reading the sync tables.

    Every query opens its own short-lived session so concurrent
    computations never share one.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str, **context) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error("performance_store_unavailable", operation=operation, error=str(e), **context)
            raise DataUnavailable(
                f"Performance store unavailable during {operation}: {e}",
                driver_id=context.get("driver_id"),
            ) from e

    async def list_race_results(
        self,
        driver_id: str,
        filters: RaceResultFilters | None = None,
    ) -> list[RaceResult]:
        filters = filters or RaceResultFilters()
        query = select(RaceResultRecord).where(RaceResultRecord.driver_id == driver_id)

        if filters.session_types is not None:
            query = query.where(
                RaceResultRecord.session_type.in_([s.value for s in filters.session_types])
            )
        if filters.series_id is not None:
            query = query.where(RaceResultRecord.series_id == filters.series_id)
        if filters.track_id is not None:
            query = query.where(RaceResultRecord.track_id == filters.track_id)
        if filters.start_date is not None:
            query = query.where(RaceResultRecord.start_time >= filters.start_date)
        if filters.end_date is not None:
            query = query.where(RaceResultRecord.start_time <= filters.end_date)

        query = query.order_by(RaceResultRecord.start_time, RaceResultRecord.subsession_id)

        async with self._session("list_race_results", driver_id=driver_id) as session:
            result = await session.execute(query)
            return [record_to_result(row) for row in result.scalars().all()]

    async def list_population_results(
        self,
        series_id: int,
        track_id: int,
        since: datetime | None = None,
    ) -> list[RaceResult]:
        query = select(RaceResultRecord).where(
            RaceResultRecord.series_id == series_id,
            RaceResultRecord.track_id == track_id,
            RaceResultRecord.session_type == SessionType.RACE.value,
        )
        if since is not None:
            query = query.where(RaceResultRecord.start_time >= since)

        async with self._session(
            "list_population_results", series_id=series_id, track_id=track_id
        ) as session:
            result = await session.execute(query.order_by(RaceResultRecord.start_time))
            return [record_to_result(row) for row in result.scalars().all()]

    async def list_schedule_entries(
        self, season_year: int, season_quarter: int
    ) -> list[Opportunity]:
        query = (
            select(ScheduleEntryRecord)
            .where(
                ScheduleEntryRecord.season_year == season_year,
                ScheduleEntryRecord.season_quarter == season_quarter,
            )
            .order_by(ScheduleEntryRecord.series_id, ScheduleEntryRecord.race_week)
        )
        async with self._session(
            "list_schedule_entries", season_year=season_year, season_quarter=season_quarter
        ) as session:
            result = await session.execute(query)
            return [record_to_opportunity(row) for row in result.scalars().all()]

    async def get_last_sync_timestamp(self, driver_id: str) -> datetime | None:
        async with self._session("get_last_sync_timestamp", driver_id=driver_id) as session:
            result = await session.execute(
                select(DriverSync.last_synced_at).where(DriverSync.driver_id == driver_id)
            )
            return result.scalar_one_or_none()

    async def list_driver_licenses(self, driver_id: str) -> list[DriverLicense]:
        async with self._session("list_driver_licenses", driver_id=driver_id) as session:
            result = await session.execute(
                select(DriverLicenseRecord).where(DriverLicenseRecord.driver_id == driver_id)
            )
            return [
                DriverLicense(
                    category=Category.normalize(row.category),
                    level=LicenseLevel.normalize(row.level),
                    safety_rating=row.safety_rating,
                    irating=row.irating,
                )
                for row in result.scalars().all()
            ]
