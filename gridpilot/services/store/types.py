"""Canonical value types shared by the store adapter and the core.

Everything that crosses the store boundary is one of these shapes. Alternate
provider field names are resolved in ``normalize`` before a value is built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Category(str, Enum):
    """Racing category of a series."""

    OVAL = "oval"
    ROAD = "road"
    DIRT_OVAL = "dirt_oval"
    DIRT_ROAD = "dirt_road"

    @classmethod
    def normalize(cls, value: "str | int | Category | None") -> "Category":
        """Map provider category names and ids onto a Category.

        Sports car and formula car both count as road racing. Unknown
        values fall back to road, the most common category.
        """
        if isinstance(value, Category):
            return value
        if value is None:
            return cls.ROAD
        if isinstance(value, int):
            return _CATEGORY_IDS.get(value, cls.ROAD)
        text = str(value).strip().lower().replace(" ", "_").replace("-", "_")
        if text.isdigit():
            return _CATEGORY_IDS.get(int(text), cls.ROAD)
        return _CATEGORY_NAMES.get(text, cls.ROAD)


_CATEGORY_IDS = {
    1: Category.OVAL,
    2: Category.ROAD,
    3: Category.DIRT_OVAL,
    4: Category.DIRT_ROAD,
    5: Category.ROAD,
    6: Category.ROAD,
}

_CATEGORY_NAMES = {
    "oval": Category.OVAL,
    "road": Category.ROAD,
    "sports_car": Category.ROAD,
    "formula_car": Category.ROAD,
    "dirt_oval": Category.DIRT_OVAL,
    "dirt_road": Category.DIRT_ROAD,
}


class SessionType(str, Enum):
    """Kind of session a result came from. Only races feed statistics."""

    PRACTICE = "practice"
    QUALIFYING = "qualifying"
    TIME_TRIAL = "time_trial"
    RACE = "race"


class LicenseLevel(str, Enum):
    """License classes, lowest first."""

    ROOKIE = "Rookie"
    D = "D"
    C = "C"
    B = "B"
    A = "A"
    PRO = "Pro"

    @property
    def rank(self) -> int:
        return _LICENSE_ORDER.index(self)

    def meets(self, required: "LicenseLevel") -> bool:
        """True when this license is at least the required class."""
        return self.rank >= required.rank

    @classmethod
    def normalize(cls, value: "str | int | LicenseLevel | None") -> "LicenseLevel":
        """Accept enum values, 'Class C' style names and 1-based group numbers."""
        if isinstance(value, LicenseLevel):
            return value
        if value is None:
            return cls.ROOKIE
        if isinstance(value, int):
            if 1 <= value <= len(_LICENSE_ORDER):
                return _LICENSE_ORDER[value - 1]
            return cls.ROOKIE
        text = str(value).strip().lower().removeprefix("class").strip()
        if text.isdigit():
            return cls.normalize(int(text))
        for level in _LICENSE_ORDER:
            if level.value.lower() == text:
                return level
        return cls.ROOKIE


_LICENSE_ORDER = [
    LicenseLevel.ROOKIE,
    LicenseLevel.D,
    LicenseLevel.C,
    LicenseLevel.B,
    LicenseLevel.A,
    LicenseLevel.PRO,
]


@dataclass(frozen=True)
class RaceResult:
    """One driver's result in one session."""

    driver_id: str
    subsession_id: int
    series_id: int
    series_name: str
    track_id: int
    track_name: str
    category: Category
    session_type: SessionType
    start_time: datetime
    start_position: int | None
    finish_position: int | None
    incidents: int
    strength_of_field: int | None = None
    race_length_minutes: float | None = None
    finished: bool = True
    season_year: int | None = None
    season_quarter: int | None = None
    old_safety_rating: float | None = None
    new_safety_rating: float | None = None

    @property
    def has_valid_positions(self) -> bool:
        """Pit-lane starts and unclassified finishes carry no usable delta."""
        return (
            self.start_position is not None
            and self.finish_position is not None
            and self.start_position > 0
            and self.finish_position > 0
        )

    @property
    def position_delta(self) -> int | None:
        """Positions gained (start - finish); positive is an improvement."""
        if not self.has_valid_positions:
            return None
        return self.start_position - self.finish_position


@dataclass(frozen=True)
class TimeSlot:
    """A scheduled session start."""

    start_time: datetime
    weekday: str


@dataclass(frozen=True)
class Opportunity:
    """A candidate race entry from the schedule."""

    series_id: int | None
    series_name: str
    track_id: int | None
    track_name: str
    license_required: LicenseLevel
    category: Category
    season_year: int
    season_quarter: int
    race_week: int
    race_length_minutes: float
    has_open_setup: bool = False
    time_slots: tuple[TimeSlot, ...] = field(default_factory=tuple)

    @property
    def key(self) -> str:
        return opportunity_key(self.series_id, self.track_id)


def opportunity_key(series_id: int | None, track_id: int | None) -> str:
    """Stable key for a series/track combination."""
    return f"{series_id}:{track_id}"


@dataclass(frozen=True)
class DriverLicense:
    """A driver's license in one category."""

    category: Category
    level: LicenseLevel
    safety_rating: float | None = None
    irating: int | None = None


@dataclass(frozen=True)
class RaceResultFilters:
    """Query filters for ``list_race_results``."""

    session_types: tuple[SessionType, ...] | None = (SessionType.RACE,)
    series_id: int | None = None
    track_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    @classmethod
    def all_sessions(cls) -> "RaceResultFilters":
        return cls(session_types=None)
