"""Performance monitor.

Records timing and cache telemetry in bounded per-category buffers and
raises threshold alerts. Purely observational: nothing here changes the
outcome of the calls it wraps.
"""

import functools
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import structlog

from gridpilot.config import load_defaults_config

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class MetricCategory(str, Enum):
    API = "api"
    CACHE = "cache"
    DATABASE = "database"
    UI = "ui"


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PerformanceMetric:
    name: str
    value: float
    unit: str
    category: MetricCategory
    timestamp: float
    tags: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "category": self.category.value,
            "timestamp": self.timestamp,
            "tags": dict(self.tags),
        }


@dataclass(frozen=True)
class Threshold:
    warning: float
    critical: float


@dataclass(frozen=True)
class PerformanceAlert:
    metric: str
    level: AlertLevel
    value: float
    threshold: float
    timestamp: float
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "level": self.level.value,
            "value": self.value,
            "threshold": self.threshold,
            "timestamp": self.timestamp,
            "message": self.message,
        }


def percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for no values."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class PerformanceMonitor:
    """
    Telemetry buffers with threshold alerting.

    Args:
        config: Parsed defaults.yaml ``monitoring`` section
        clock: Wall-clock source (seconds), injectable for tests
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if config is None:
            config = load_defaults_config().get("monitoring", {})
        self.clock = clock
        self.max_samples = int(config.get("max_samples_per_category", 1000))
        self.max_alerts = int(config.get("max_alerts", 100))
        self._samples: dict[MetricCategory, deque[PerformanceMetric]] = {
            c: deque(maxlen=self.max_samples) for c in MetricCategory
        }
        self._alerts: deque[PerformanceAlert] = deque(maxlen=self.max_alerts)
        self._thresholds: dict[str, Threshold] = {}

        thresholds = config.get("thresholds") or {
            "api_response_time": {"warning": 1000, "critical": 3000},
            "database_query_time": {"warning": 500, "critical": 2000},
            "recommendation_compute_time": {"warning": 2000, "critical": 5000},
        }
        for name, levels in thresholds.items():
            self.set_threshold(name, levels["warning"], levels["critical"])

    def set_threshold(self, metric_name: str, warning: float, critical: float) -> None:
        if warning > critical:
            raise ValueError(f"warning ({warning}) must not exceed critical ({critical})")
        self._thresholds[metric_name] = Threshold(warning=warning, critical=critical)

    def get_threshold(self, metric_name: str) -> Threshold | None:
        return self._thresholds.get(metric_name)

    def record_metric(
        self,
        name: str,
        value: float,
        unit: str = "ms",
        category: MetricCategory | str = MetricCategory.API,
        tags: dict[str, str] | None = None,
    ) -> PerformanceMetric:
        """Store a sample and alert if it crosses a threshold."""
        metric = PerformanceMetric(
            name=name,
            value=float(value),
            unit=unit,
            category=MetricCategory(category),
            timestamp=self.clock(),
            tags={k: str(v) for k, v in (tags or {}).items() if v is not None},
        )
        self._samples[metric.category].append(metric)
        self._check_threshold(metric)
        return metric

    def _check_threshold(self, metric: PerformanceMetric) -> None:
        threshold = self._thresholds.get(metric.name)
        if threshold is None:
            return

        if metric.value >= threshold.critical:
            level, limit = AlertLevel.CRITICAL, threshold.critical
        elif metric.value >= threshold.warning:
            level, limit = AlertLevel.WARNING, threshold.warning
        else:
            return

        alert = PerformanceAlert(
            metric=metric.name,
            level=level,
            value=metric.value,
            threshold=limit,
            timestamp=metric.timestamp,
            message=(
                f"{metric.name} exceeded {level.value} threshold: "
                f"{metric.value:.1f}{metric.unit} >= {limit}{metric.unit}"
            ),
        )
        self._alerts.append(alert)
        logger.warning(
            "performance_threshold_exceeded",
            metric=metric.name,
            level=level.value,
            value=round(metric.value, 1),
            threshold=limit,
            **metric.tags,
        )

    def time_function(
        self,
        name: str,
        category: MetricCategory | str,
        fn: Callable[..., T],
        *args,
        tags: dict[str, str] | None = None,
        **kwargs,
    ) -> T:
        """Call fn, record its duration, and return its result unchanged."""
        start = time.perf_counter()
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            self._record_failure(name, category, start, tags, e)
            raise
        self.record_metric(name, (time.perf_counter() - start) * 1000, "ms", category, tags)
        return result

    async def time_async(
        self,
        name: str,
        category: MetricCategory | str,
        fn: Callable[..., Awaitable[T]],
        *args,
        tags: dict[str, str] | None = None,
        **kwargs,
    ) -> T:
        """Awaitable counterpart of ``time_function``."""
        start = time.perf_counter()
        try:
            result = await fn(*args, **kwargs)
        except Exception as e:
            self._record_failure(name, category, start, tags, e)
            raise
        self.record_metric(name, (time.perf_counter() - start) * 1000, "ms", category, tags)
        return result

    def timed(self, name: str, category: MetricCategory | str):
        """Decorator form of ``time_async`` for coroutine functions."""

        def decorator(fn):
            @functools.wraps(fn)
            async def wrapper(*args, **kwargs):
                return await self.time_async(name, category, fn, *args, **kwargs)

            return wrapper

        return decorator

    def _record_failure(self, name, category, start, tags, error: Exception) -> None:
        self.record_metric(
            name,
            (time.perf_counter() - start) * 1000,
            "ms",
            category,
            {**(tags or {}), "error": "true", "error_type": type(error).__name__},
        )

    def record_api_metric(self, endpoint: str, method: str, duration_ms: float, status: int):
        return self.record_metric(
            "api_response_time",
            duration_ms,
            "ms",
            MetricCategory.API,
            {
                "endpoint": endpoint,
                "method": method,
                "status": str(status),
                "success": "true" if status < 400 else "false",
            },
        )

    def record_cache_metric(self, operation: str, cache_type: str = "recommendations"):
        return self.record_metric(
            "cache_operation",
            1,
            "count",
            MetricCategory.CACHE,
            {"operation": operation, "cache_type": cache_type},
        )

    def record_database_metric(self, query: str, duration_ms: float, row_count: int | None = None):
        return self.record_metric(
            "database_query_time",
            duration_ms,
            "ms",
            MetricCategory.DATABASE,
            {"query": query[:50], "row_count": row_count},
        )

    def record_ui_metric(self, component: str, operation: str, duration_ms: float):
        return self.record_metric(
            "ui_render_time",
            duration_ms,
            "ms",
            MetricCategory.UI,
            {"component": component, "operation": operation},
        )

    def _timing_summary(self, samples: list[PerformanceMetric]) -> dict[str, Any]:
        values = [m.value for m in samples if m.unit == "ms"]
        return {
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
            "p95": round(percentile(values, 95), 2),
            "count": len(values),
        }

    def get_performance_summary(self, window_minutes: float = 5) -> dict[str, Any]:
        """Average and p95 per category plus cache hit rate over the window."""
        now = self.clock()
        cutoff = now - window_minutes * 60

        recent = {
            c: [m for m in buffer if m.timestamp >= cutoff] for c, buffer in self._samples.items()
        }
        cache_ops = recent[MetricCategory.CACHE]
        hits = sum(1 for m in cache_ops if m.tags.get("operation") == "hit")
        misses = sum(1 for m in cache_ops if m.tags.get("operation") == "miss")

        return {
            "metrics": {
                "api": self._timing_summary(recent[MetricCategory.API]),
                "cache": {
                    "hit_rate": round(hits / (hits + misses), 4) if hits + misses else 0.0,
                    "operations": len(cache_ops),
                },
                "database": self._timing_summary(recent[MetricCategory.DATABASE]),
                "ui": self._timing_summary(recent[MetricCategory.UI]),
            },
            "alerts": [a.to_dict() for a in self._alerts if a.timestamp >= cutoff],
            "time_range": {"start": cutoff, "end": now},
        }

    def get_all_metrics(self) -> list[PerformanceMetric]:
        merged = [m for buffer in self._samples.values() for m in buffer]
        return sorted(merged, key=lambda m: m.timestamp)

    def get_all_alerts(self) -> list[PerformanceAlert]:
        return list(self._alerts)

    def clear(self) -> None:
        for buffer in self._samples.values():
            buffer.clear()
        self._alerts.clear()
