"""Unit tests for the SQL performance store without a database."""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from gridpilot.errors import DataUnavailable
from gridpilot.models.domain import RaceResultRecord, ScheduleEntryRecord
from gridpilot.services.store.sql import SqlPerformanceStore, record_to_opportunity, record_to_result
from gridpilot.services.store.types import Category, LicenseLevel, SessionType


class RefusingSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement):
        raise OperationalError("SELECT", {}, ConnectionRefusedError("connection refused"))


def test_result_row_conversion():
    row = RaceResultRecord(
        driver_id="d-1",
        subsession_id=91,
        series_id=4,
        series_name="Mazda Cup",
        track_id=12,
        track_name="Okayama",
        category="road",
        session_type="race",
        start_time=datetime(2026, 1, 3, 19, 0),
        start_position=7,
        finish_position=2,
        incidents=None,
        strength_of_field=1650,
        race_length_minutes=30.0,
        finished=True,
    )
    result = record_to_result(row)

    assert result.category == Category.ROAD
    assert result.session_type == SessionType.RACE
    assert result.start_time.tzinfo is not None
    assert result.incidents == 0
    assert result.position_delta == 5


def test_schedule_row_conversion_sorts_slots():
    row = ScheduleEntryRecord(
        series_id=4,
        series_name="Mazda Cup",
        track_id=12,
        track_name="Okayama",
        license_required="D",
        category="road",
        season_year=2026,
        season_quarter=1,
        race_week=3,
        race_length_minutes=30.0,
        has_open_setup=False,
        time_slots=["2026-01-08T20:00:00+00:00", "2026-01-06T18:00:00+00:00"],
    )
    opp = record_to_opportunity(row)

    assert opp.key == "4:12"
    assert opp.license_required == LicenseLevel.D
    assert [s.weekday for s in opp.time_slots] == ["Tuesday", "Thursday"]
    assert opp.time_slots[0].start_time == datetime(2026, 1, 6, 18, 0, tzinfo=timezone.utc)


def test_database_errors_become_data_unavailable():
    store = SqlPerformanceStore(RefusingSession)

    with pytest.raises(DataUnavailable) as exc_info:
        asyncio.run(store.list_race_results("d-1"))
    assert exc_info.value.driver_id == "d-1"

    with pytest.raises(DataUnavailable):
        asyncio.run(store.list_schedule_entries(2026, 1))
