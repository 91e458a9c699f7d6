"""Driver performance profiles and population baselines.

Both are built once per aggregation cycle and treated as immutable after
that, so they can be shared by reference between concurrent readers.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from gridpilot.services.store.types import Category


class GroupingLevel(str, Enum):
    """How specific the statistics behind a score are, most specific first."""

    SERIES_TRACK = "series_track"
    SERIES = "series"
    TRACK = "track"
    CATEGORY = "category"
    DEFAULT = "default"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class DataQuality(str, Enum):
    HIGH = "high"
    MODERATE = "moderate"
    DEFAULT = "default"


@dataclass(frozen=True)
class MetricSummary:
    """Mean and population variance of the per-race metrics for one grouping."""

    race_count: int
    avg_position_delta: float
    position_delta_variance: float
    avg_incidents: float
    incident_variance: float
    avg_finish_position: float
    finish_position_variance: float
    avg_strength_of_field: float | None = None
    strength_of_field_variance: float | None = None

    @property
    def finish_position_std(self) -> float:
        return math.sqrt(self.finish_position_variance)


@dataclass(frozen=True)
class OverallStats:
    """Whole-career race statistics for a driver."""

    races_started: int = 0
    avg_position_delta: float = 0.0
    incident_rate: float = 0.0
    safety_rating_trend: float = 0.0
    position_delta_trend: float = 0.0
    trend: TrendDirection = TrendDirection.STABLE
    avg_race_length: float | None = None
    races_per_week: float = 0.0


@dataclass(frozen=True)
class ProfileLookup:
    """Statistics resolved for one opportunity, with the level they came from."""

    level: GroupingLevel
    stats: MetricSummary | None


def _frozen(mapping: Mapping | None) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class DriverPerformanceProfile:
    """
    Per-driver performance profile.

    The ``per_*`` mappings hold every grouping seen, including ones below the
    sample threshold. Scoring must go through ``lookup`` so that
    untrusted groupings are never used directly.
    """

    driver_id: str
    primary_category: Category | None
    overall: OverallStats
    min_sample_size: int
    per_series: Mapping[int, MetricSummary] = field(default_factory=dict)
    per_track: Mapping[int, MetricSummary] = field(default_factory=dict)
    per_series_track: Mapping[tuple[int, int], MetricSummary] = field(default_factory=dict)
    per_category: Mapping[Category, MetricSummary] = field(default_factory=dict)
    series_starts: Mapping[int, int] = field(default_factory=dict)
    track_starts: Mapping[int, int] = field(default_factory=dict)
    series_track_starts: Mapping[tuple[int, int], int] = field(default_factory=dict)
    built_at: datetime | None = None

    def __post_init__(self):
        for name in (
            "per_series",
            "per_track",
            "per_series_track",
            "per_category",
            "series_starts",
            "track_starts",
            "series_track_starts",
        ):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    @classmethod
    def empty(cls, driver_id: str, min_sample_size: int, built_at: datetime | None = None):
        """Profile for a driver with no race history."""
        return cls(
            driver_id=driver_id,
            primary_category=None,
            overall=OverallStats(),
            min_sample_size=min_sample_size,
            built_at=built_at,
        )

    def _trusted(self, summary: MetricSummary | None) -> MetricSummary | None:
        if summary is not None and summary.race_count >= self.min_sample_size:
            return summary
        return None

    def lookup(self, series_id: int, track_id: int, category: Category) -> ProfileLookup:
        """Most specific trusted statistics for a series/track/category."""
        candidates = (
            (GroupingLevel.SERIES_TRACK, self.per_series_track.get((series_id, track_id))),
            (GroupingLevel.SERIES, self.per_series.get(series_id)),
            (GroupingLevel.TRACK, self.per_track.get(track_id)),
            (GroupingLevel.CATEGORY, self.per_category.get(category)),
        )
        for level, summary in candidates:
            trusted = self._trusted(summary)
            if trusted is not None:
                return ProfileLookup(level=level, stats=trusted)
        return ProfileLookup(level=GroupingLevel.DEFAULT, stats=None)

    def starts(self, series_id: int, track_id: int) -> tuple[int, int, int]:
        """Race starts at (series/track, series, track)."""
        return (
            self.series_track_starts.get((series_id, track_id), 0),
            self.series_starts.get(series_id, 0),
            self.track_starts.get(track_id, 0),
        )


@dataclass(frozen=True)
class GlobalStats:
    """Population baseline for one opportunity (series/track)."""

    avg_incidents_per_race: float
    finish_position_std: float
    avg_position_delta: float
    position_delta_std: float
    avg_strength_of_field: float
    strength_of_field_std: float
    attrition_rate: float
    avg_race_length: float
    race_count: int = 0
    data_quality: DataQuality = DataQuality.DEFAULT
    category_incident_rate: float | None = None

    @property
    def strength_of_field_variability(self) -> float:
        """Coefficient of variation of strength of field across sessions."""
        if self.avg_strength_of_field <= 0:
            return 0.0
        return self.strength_of_field_std / self.avg_strength_of_field

    @classmethod
    def neutral(cls, defaults: Mapping[str, Any]):
        """Baseline used when an opportunity has no history."""
        return cls(
            avg_incidents_per_race=float(defaults.get("avg_incidents_per_race", 2.5)),
            finish_position_std=float(defaults.get("finish_position_std", 8.0)),
            avg_position_delta=float(defaults.get("avg_position_delta", 0.0)),
            position_delta_std=float(defaults.get("position_delta_std", 5.0)),
            avg_strength_of_field=float(defaults.get("avg_strength_of_field", 1500.0)),
            strength_of_field_std=float(defaults.get("strength_of_field_std", 300.0)),
            attrition_rate=float(defaults.get("attrition_rate", 0.15)),
            avg_race_length=float(defaults.get("avg_race_length", 60.0)),
            race_count=0,
            data_quality=DataQuality.DEFAULT,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "avg_incidents_per_race": round(self.avg_incidents_per_race, 3),
            "finish_position_std": round(self.finish_position_std, 3),
            "avg_position_delta": round(self.avg_position_delta, 3),
            "position_delta_std": round(self.position_delta_std, 3),
            "avg_strength_of_field": round(self.avg_strength_of_field, 1),
            "strength_of_field_variability": round(self.strength_of_field_variability, 4),
            "attrition_rate": round(self.attrition_rate, 4),
            "avg_race_length": round(self.avg_race_length, 1),
            "race_count": self.race_count,
            "data_quality": self.data_quality.value,
        }
