"""Performance monitoring API endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from gridpilot.api.dependencies import get_monitor
from gridpilot.services.monitoring import PerformanceMonitor

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


@router.get("/summary")
async def performance_summary(
    monitor: PerformanceMonitor = Depends(get_monitor),
    window_minutes: float = Query(5, gt=0, le=1440, description="Look-back window"),
) -> dict[str, Any]:
    """Average and p95 timings per category plus cache hit rate."""
    return monitor.get_performance_summary(window_minutes)


@router.get("/alerts")
async def list_alerts(monitor: PerformanceMonitor = Depends(get_monitor)) -> list[dict[str, Any]]:
    """Threshold alerts, oldest first."""
    return [alert.to_dict() for alert in monitor.get_all_alerts()]
