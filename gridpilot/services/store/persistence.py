"""Write path used by the sync tasks.

Raw provider payloads are normalized here, at the boundary, and upserted
into the tables ``SqlPerformanceStore`` reads.
"""

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from gridpilot.models.domain import DriverSync, RaceResultRecord, ScheduleEntryRecord
from gridpilot.services.store.normalize import (
    normalize_race_results,
    normalize_schedule_entry,
)

logger = structlog.get_logger(__name__)


async def persist_race_results(
    session: AsyncSession,
    driver_id: str,
    payloads: list[dict[str, Any]],
) -> int:
    """
    Store a driver's race results, ignoring subsessions already stored.

    Returns:
        Number of payloads that normalized cleanly
    """
    results = normalize_race_results(payloads, driver_id)
    raw_by_subsession = {p.get("subsession_id"): p for p in payloads}

    for r in results:
        stmt = insert(RaceResultRecord).values(
            driver_id=r.driver_id,
            subsession_id=r.subsession_id,
            series_id=r.series_id,
            series_name=r.series_name,
            track_id=r.track_id,
            track_name=r.track_name,
            category=r.category.value,
            session_type=r.session_type.value,
            start_time=r.start_time,
            start_position=r.start_position,
            finish_position=r.finish_position,
            incidents=r.incidents,
            strength_of_field=r.strength_of_field,
            race_length_minutes=r.race_length_minutes,
            finished=r.finished,
            season_year=r.season_year,
            season_quarter=r.season_quarter,
            old_safety_rating=r.old_safety_rating,
            new_safety_rating=r.new_safety_rating,
            raw_data=raw_by_subsession.get(r.subsession_id),
        )
        await session.execute(
            stmt.on_conflict_do_nothing(constraint="uq_race_result_driver_subsession")
        )

    now = datetime.now(timezone.utc)
    sync_stmt = insert(DriverSync).values(
        driver_id=driver_id, last_synced_at=now, races_synced=len(results)
    )
    await session.execute(
        sync_stmt.on_conflict_do_update(
            index_elements=[DriverSync.driver_id],
            set_={
                "last_synced_at": now,
                "races_synced": DriverSync.races_synced + len(results),
            },
        )
    )
    await session.commit()

    logger.info(
        "race_results_persisted",
        driver_id=driver_id,
        received=len(payloads),
        stored=len(results),
    )
    return len(results)


async def persist_schedule(
    session: AsyncSession,
    payloads: list[dict[str, Any]],
    season_year: int,
    season_quarter: int,
) -> int:
    """Upsert schedule entries for a season. Returns entries stored."""
    stored = 0
    for payload in payloads:
        entry = normalize_schedule_entry(payload, season_year, season_quarter)
        if entry.series_id is None or entry.track_id is None:
            logger.warning(
                "schedule_entry_skipped",
                series_id=entry.series_id,
                track_id=entry.track_id,
                race_week=entry.race_week,
            )
            continue

        values = {
            "series_name": entry.series_name,
            "track_id": entry.track_id,
            "track_name": entry.track_name,
            "license_required": entry.license_required.value,
            "category": entry.category.value,
            "race_length_minutes": entry.race_length_minutes,
            "has_open_setup": entry.has_open_setup,
            "time_slots": [slot.start_time.isoformat() for slot in entry.time_slots],
        }
        stmt = insert(ScheduleEntryRecord).values(
            series_id=entry.series_id,
            season_year=entry.season_year,
            season_quarter=entry.season_quarter,
            race_week=entry.race_week,
            **values,
        )
        await session.execute(
            stmt.on_conflict_do_update(constraint="uq_schedule_series_week", set_=values)
        )
        stored += 1

    await session.commit()
    logger.info(
        "schedule_persisted",
        season_year=season_year,
        season_quarter=season_quarter,
        received=len(payloads),
        stored=stored,
    )
    return stored
