"""Pytest configuration and fixtures for GridPilot tests."""

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from gridpilot.services.store.types import (
    Category,
    LicenseLevel,
    Opportunity,
    RaceResult,
    SessionType,
    TimeSlot,
)

SEASON = (2026, 1)
BASE_TIME = datetime(2026, 1, 5, 18, 0, tzinfo=timezone.utc)

_subsessions = count(1000)


def make_result(
    driver_id: str = "driver-1",
    series_id: int = 1,
    track_id: int = 10,
    start: int | None = 10,
    finish: int | None = 8,
    incidents: int = 2,
    category: Category = Category.ROAD,
    session_type: SessionType = SessionType.RACE,
    days_ago: float = 1.0,
    sof: int | None = 1500,
    finished: bool = True,
    race_length: float | None = 40.0,
    subsession_id: int | None = None,
    **kwargs,
) -> RaceResult:
    """Build a canonical result relative to BASE_TIME."""
    return RaceResult(
        driver_id=driver_id,
        subsession_id=subsession_id if subsession_id is not None else next(_subsessions),
        series_id=series_id,
        series_name=kwargs.pop("series_name", f"Series {series_id}"),
        track_id=track_id,
        track_name=kwargs.pop("track_name", f"Track {track_id}"),
        category=category,
        session_type=session_type,
        start_time=BASE_TIME - timedelta(days=days_ago),
        start_position=start,
        finish_position=finish,
        incidents=incidents,
        strength_of_field=sof,
        race_length_minutes=race_length,
        finished=finished,
        **kwargs,
    )


def make_opportunity(
    series_id: int | None = 1,
    track_id: int | None = 10,
    category: Category = Category.ROAD,
    license_required: LicenseLevel = LicenseLevel.ROOKIE,
    race_length: float = 40.0,
    race_week: int = 1,
    open_setup: bool = False,
    slot_days: tuple[int, ...] = (2,),
) -> Opportunity:
    """Build a schedule entry in the test season."""
    slots = tuple(
        TimeSlot(start_time=BASE_TIME + timedelta(days=d), weekday=(BASE_TIME + timedelta(days=d)).strftime("%A"))
        for d in slot_days
    )
    return Opportunity(
        series_id=series_id,
        series_name=f"Series {series_id}",
        track_id=track_id,
        track_name=f"Track {track_id}",
        license_required=license_required,
        category=category,
        season_year=SEASON[0],
        season_quarter=SEASON[1],
        race_week=race_week,
        race_length_minutes=race_length,
        has_open_setup=open_setup,
        time_slots=slots,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scoring_config():
    """Scoring section of defaults.yaml."""
    from gridpilot.config import load_defaults_config

    return load_defaults_config()["scoring"]


@pytest.fixture
def defaults_config():
    from gridpilot.config import load_defaults_config

    return load_defaults_config()


@pytest.fixture
def five_opportunities():
    """A five-entry schedule across categories."""
    return [
        make_opportunity(series_id=1, track_id=10),
        make_opportunity(series_id=2, track_id=20, race_length=90.0),
        make_opportunity(series_id=3, track_id=30, category=Category.OVAL),
        make_opportunity(series_id=4, track_id=40, category=Category.DIRT_OVAL, open_setup=True),
        make_opportunity(series_id=5, track_id=50, category=Category.DIRT_ROAD, race_length=20.0),
    ]
