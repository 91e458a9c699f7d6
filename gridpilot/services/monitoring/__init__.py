"""Performance telemetry."""

from gridpilot.services.monitoring.instrumented import MonitoredPerformanceStore
from gridpilot.services.monitoring.monitor import (
    AlertLevel,
    MetricCategory,
    PerformanceAlert,
    PerformanceMetric,
    PerformanceMonitor,
)

__all__ = [
    "AlertLevel",
    "MetricCategory",
    "MonitoredPerformanceStore",
    "PerformanceAlert",
    "PerformanceMetric",
    "PerformanceMonitor",
]
