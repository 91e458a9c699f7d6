"""Driver profiles and population baselines."""

from gridpilot.services.analytics.aggregator import AnalyticsAggregator
from gridpilot.services.analytics.profile import (
    DataQuality,
    DriverPerformanceProfile,
    GlobalStats,
    GroupingLevel,
    MetricSummary,
    OverallStats,
    TrendDirection,
)

__all__ = [
    "AnalyticsAggregator",
    "DataQuality",
    "DriverPerformanceProfile",
    "GlobalStats",
    "GroupingLevel",
    "MetricSummary",
    "OverallStats",
    "TrendDirection",
]
