"""Analytics aggregation.

Turns raw race history into a DriverPerformanceProfile and population
results into per-opportunity GlobalStats.
"""

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from statistics import mean, pvariance
from typing import Any

import structlog

from gridpilot.config import load_defaults_config
from gridpilot.services.analytics.profile import (
    DataQuality,
    DriverPerformanceProfile,
    GlobalStats,
    MetricSummary,
    OverallStats,
    TrendDirection,
)
from gridpilot.services.store.base import PerformanceStore
from gridpilot.services.store.types import Category, Opportunity, RaceResult, SessionType

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def summarize(results: list[RaceResult]) -> MetricSummary | None:
    """
    Mean and population variance over rows with valid positions.

    Returns None when no row qualifies.
    """
    rows = [r for r in results if r.has_valid_positions]
    if not rows:
        return None

    deltas = [r.position_delta for r in rows]
    incidents = [r.incidents for r in rows]
    finishes = [r.finish_position for r in rows]
    sofs = [r.strength_of_field for r in rows if r.strength_of_field is not None]

    return MetricSummary(
        race_count=len(rows),
        avg_position_delta=mean(deltas),
        position_delta_variance=pvariance(deltas),
        avg_incidents=mean(incidents),
        incident_variance=pvariance(incidents),
        avg_finish_position=mean(finishes),
        finish_position_variance=pvariance(finishes),
        avg_strength_of_field=mean(sofs) if sofs else None,
        strength_of_field_variance=pvariance(sofs) if sofs else None,
    )


def trend_slope(values: list[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2
    y_mean = mean(values)
    numerator = sum((i - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    return numerator / denominator if denominator else 0.0


def classify_trend(slope: float, stable_band: float) -> TrendDirection:
    if slope > stable_band:
        return TrendDirection.IMPROVING
    if slope < -stable_band:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def safety_rating_trend(results: list[RaceResult]) -> float:
    """Change in safety rating across the given races."""
    rated = [r for r in results if r.new_safety_rating is not None]
    if not rated:
        return 0.0
    first, last = rated[0], rated[-1]
    baseline = first.old_safety_rating
    if baseline is None:
        baseline = first.new_safety_rating
    return last.new_safety_rating - baseline


def races_per_week(results: list[RaceResult], window_days: int) -> float:
    """
    Average races per active ISO week over the window ending at the last race.

    Anchored to the driver's own latest race so the figure depends only on
    their data.
    """
    if not results:
        return 0.0
    latest = results[-1].start_time
    cutoff = latest - timedelta(days=window_days)
    weeks: dict[tuple[int, int], int] = {}
    for r in results:
        if r.start_time < cutoff:
            continue
        iso = r.start_time.isocalendar()
        week = (iso[0], iso[1])
        weeks[week] = weeks.get(week, 0) + 1
    if not weeks:
        return 0.0
    return sum(weeks.values()) / len(weeks)


def _primary_category(counts: dict[Category, int]) -> Category | None:
    if not counts:
        return None
    order = list(Category)
    return max(counts, key=lambda c: (counts[c], -order.index(c)))


def _group(results: Iterable[RaceResult], key: Callable[[RaceResult], Any]) -> dict:
    groups: dict[Any, list[RaceResult]] = {}
    for r in results:
        groups.setdefault(key(r), []).append(r)
    return groups


def compute_profile(
    driver_id: str,
    results: list[RaceResult],
    config: dict[str, Any],
    built_at: datetime | None = None,
) -> DriverPerformanceProfile:
    """
    Build a profile from a driver's race history (oldest first).

    Non-race sessions are ignored. Rows without valid positions count as
    starts but do not feed position statistics.
    """
    min_sample = int(config.get("min_sample_size", 3))
    races = sorted(
        (r for r in results if r.session_type == SessionType.RACE),
        key=lambda r: (r.start_time, r.subsession_id),
    )
    if not races:
        return DriverPerformanceProfile.empty(driver_id, min_sample, built_at)

    by_series = _group(races, lambda r: r.series_id)
    by_track = _group(races, lambda r: r.track_id)
    by_series_track = _group(races, lambda r: (r.series_id, r.track_id))
    by_category = _group(races, lambda r: r.category)

    def summaries(groups: dict) -> dict:
        out = {}
        for k, rows in groups.items():
            summary = summarize(rows)
            if summary is not None:
                out[k] = summary
        return out

    window = int(config.get("trend_window", 10))
    recent = races[-window:]
    slope = trend_slope([r.position_delta for r in recent if r.position_delta is not None])

    deltas = [r.position_delta for r in races if r.position_delta is not None]
    lengths = [r.race_length_minutes for r in races if r.race_length_minutes]

    overall = OverallStats(
        races_started=len(races),
        avg_position_delta=mean(deltas) if deltas else 0.0,
        incident_rate=mean(r.incidents for r in races),
        safety_rating_trend=safety_rating_trend(recent),
        position_delta_trend=slope,
        trend=classify_trend(slope, float(config.get("trend_stable_band", 0.1))),
        avg_race_length=mean(lengths) if lengths else None,
        races_per_week=races_per_week(races, int(config.get("cadence_window_days", 28))),
    )

    return DriverPerformanceProfile(
        driver_id=driver_id,
        primary_category=_primary_category({c: len(rows) for c, rows in by_category.items()}),
        overall=overall,
        min_sample_size=min_sample,
        per_series=summaries(by_series),
        per_track=summaries(by_track),
        per_series_track=summaries(by_series_track),
        per_category=summaries(by_category),
        series_starts={k: len(v) for k, v in by_series.items()},
        track_starts={k: len(v) for k, v in by_track.items()},
        series_track_starts={k: len(v) for k, v in by_series_track.items()},
        built_at=built_at,
    )


def _std(values: list[float]) -> float:
    return math.sqrt(pvariance(values)) if len(values) > 1 else 0.0


def compute_global_stats(rows: list[RaceResult], config: dict[str, Any]) -> GlobalStats:
    """
    Population baseline for one series/track.

    Any metric without data falls back to its neutral default so no field
    is ever NaN.
    """
    defaults = config.get("defaults", {})
    races = [r for r in rows if r.session_type == SessionType.RACE]
    if not races:
        return GlobalStats.neutral(defaults)

    neutral = GlobalStats.neutral(defaults)
    positioned = [r for r in races if r.has_valid_positions]
    deltas = [r.position_delta for r in positioned]
    finishes = [r.finish_position for r in positioned]

    # One strength-of-field value per session
    sof_by_session: dict[int, int] = {}
    for r in races:
        if r.strength_of_field is not None:
            sof_by_session.setdefault(r.subsession_id, r.strength_of_field)
    sofs = list(sof_by_session.values())
    lengths = [r.race_length_minutes for r in races if r.race_length_minutes]

    count = len(races)
    if count >= int(config.get("high_quality_races", 50)):
        quality = DataQuality.HIGH
    elif count >= int(config.get("moderate_quality_races", 20)):
        quality = DataQuality.MODERATE
    else:
        quality = DataQuality.DEFAULT

    return GlobalStats(
        avg_incidents_per_race=mean(r.incidents for r in races),
        finish_position_std=_std(finishes) if len(finishes) > 1 else neutral.finish_position_std,
        avg_position_delta=mean(deltas) if deltas else neutral.avg_position_delta,
        position_delta_std=_std(deltas) if len(deltas) > 1 else neutral.position_delta_std,
        avg_strength_of_field=mean(sofs) if sofs else neutral.avg_strength_of_field,
        strength_of_field_std=_std(sofs) if len(sofs) > 1 else neutral.strength_of_field_std,
        attrition_rate=sum(1 for r in races if not r.finished) / count,
        avg_race_length=mean(lengths) if lengths else neutral.avg_race_length,
        race_count=count,
        data_quality=quality,
    )


def category_incident_rates(
    baselines: Iterable[tuple[Category, GlobalStats]], fallback: float
) -> dict[Category, float]:
    """
    Incidents per race for each category, weighted by race count.

    A category whose baselines hold no races gets ``fallback``.
    """
    incidents: dict[Category, float] = {}
    races: dict[Category, int] = {}
    for category, stats in baselines:
        incidents[category] = incidents.get(category, 0.0) + stats.avg_incidents_per_race * stats.race_count
        races[category] = races.get(category, 0) + stats.race_count
    return {
        category: incidents[category] / count if count else fallback
        for category, count in races.items()
    }


class AnalyticsAggregator:
    """
    Service for building driver profiles and population baselines.

    Store failures propagate as DataUnavailable; nothing here retries.
    """

    def __init__(
        self,
        store: PerformanceStore,
        config: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the aggregator.

        Args:
            store: Performance store to read history from
            config: Parsed defaults.yaml (loaded when not given)
            clock: Source of "now" for the population window
        """
        self.store = store
        config = config if config is not None else load_defaults_config()
        self.aggregation_config = config.get("aggregation", {})
        self.global_config = config.get("global_stats", {})
        self.clock = clock

    async def build_profile(self, driver_id: str) -> DriverPerformanceProfile:
        """Fetch a driver's race history and summarise it."""
        results = await self.store.list_race_results(driver_id)
        profile = compute_profile(
            driver_id, results, self.aggregation_config, built_at=self.clock()
        )
        logger.debug(
            "profile_built",
            driver_id=driver_id,
            races=profile.overall.races_started,
            primary_category=profile.primary_category.value if profile.primary_category else None,
            trend=profile.overall.trend.value,
        )
        return profile

    async def build_global_stats(
        self, opportunities: Iterable[Opportunity]
    ) -> dict[str, GlobalStats]:
        """
        Population baselines keyed by opportunity key.

        Each baseline depends only on its own series/track population.
        Category incident rates are attached separately by
        ``with_category_rates`` once every baseline in a schedule is known.
        """
        since = self.clock() - timedelta(days=int(self.global_config.get("window_days", 90)))

        unique: dict[str, Opportunity] = {}
        for opp in opportunities:
            if opp.series_id is None or opp.track_id is None:
                continue
            unique.setdefault(opp.key, opp)

        stats: dict[str, GlobalStats] = {}
        for key, opp in unique.items():
            rows = await self.store.list_population_results(
                opp.series_id, opp.track_id, since=since
            )
            stats[key] = compute_global_stats(rows, self.global_config)

        logger.info(
            "global_stats_computed",
            opportunities=len(stats),
            with_history=sum(1 for s in stats.values() if s.race_count),
        )
        return stats

    def with_category_rates(
        self,
        baselines: Mapping[str, GlobalStats],
        opportunities: Iterable[Opportunity],
    ) -> dict[str, GlobalStats]:
        """
        Attach each category's incident rate to the baselines of that category.

        The rate is pooled over every race row behind the given
        opportunities' baselines, so it depends on the schedule and the
        population data alone.
        """
        fallback = float(
            self.global_config.get("defaults", {}).get("avg_incidents_per_race", 2.5)
        )
        categories: dict[str, Category] = {}
        for opp in opportunities:
            if opp.key in baselines:
                categories.setdefault(opp.key, opp.category)

        rates = category_incident_rates(
            ((categories[key], baselines[key]) for key in sorted(categories)), fallback
        )
        return {
            key: replace(stats, category_incident_rate=rates[categories[key]])
            if key in categories
            else stats
            for key, stats in baselines.items()
        }
