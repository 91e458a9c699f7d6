"""Recommendation API endpoints."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from gridpilot.api.dependencies import get_coordinator
from gridpilot.errors import ComputationTimeout, DataUnavailable
from gridpilot.services.recommendations import (
    RecommendationCoordinator,
    RecommendationFilters,
)
from gridpilot.services.scoring import RecommendationMode
from gridpilot.services.store.types import Category

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/recommendations", tags=["recommendations"])


class TimeSlotItem(BaseModel):
    start_time: datetime
    weekday: str


class GlobalStatsItem(BaseModel):
    avg_incidents_per_race: float
    finish_position_std: float
    avg_position_delta: float
    position_delta_std: float
    avg_strength_of_field: float
    strength_of_field_variability: float
    attrition_rate: float
    avg_race_length: float
    race_count: int
    data_quality: str


class FactorScoresItem(BaseModel):
    performance: float
    safety: float
    consistency: float
    predictability: float
    familiarity: float
    fatigue_risk: float
    attrition_risk: float
    time_volatility: float


class ScoreItem(BaseModel):
    overall: int
    factors: FactorScoresItem
    irating_risk: str
    safety_rating_risk: str
    reasoning: list[str]


class RecommendationItem(BaseModel):
    """One scored opportunity."""

    key: str
    series_id: int
    series_name: str
    track_id: int
    track_name: str
    category: str
    license_required: str
    season_year: int
    season_quarter: int
    race_week: int
    race_length_minutes: float
    has_open_setup: bool
    time_slots: list[TimeSlotItem]
    global_stats: GlobalStatsItem
    score: ScoreItem
    data_level: str


class RecommendationMetadataItem(BaseModel):
    cache_status: str
    cache_hit_rate: float
    processing_time_ms: float
    skipped_opportunities: int
    mode: str
    last_sync: datetime | None = None


class RecommendationListResponse(BaseModel):
    """Ranked recommendations with cache metadata."""

    recommendations: list[RecommendationItem]
    metadata: RecommendationMetadataItem


class PrefetchResponse(BaseModel):
    driver_id: str
    warmed: bool


@router.get("/{driver_id}", response_model=RecommendationListResponse)
async def get_recommendations(
    driver_id: str,
    coordinator: RecommendationCoordinator = Depends(get_coordinator),
    max_results: int | None = Query(None, ge=1, le=200, description="Limit the list"),
    category: Category | None = Query(None, description="Only this category"),
    start_date: datetime | None = Query(None, description="Earliest session start"),
    end_date: datetime | None = Query(None, description="Latest session start"),
    mode: RecommendationMode = Query(RecommendationMode.BALANCED, description="Goal the weights favour"),
):
    """
    Ranked race recommendations for a driver.

    Scores are computed over every eligible opportunity before filters are
    applied, so rankings are comparable across filter combinations.
    """
    try:
        filters = RecommendationFilters(
            max_results=max_results,
            category=category,
            start_date=start_date,
            end_date=end_date,
            mode=mode,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        response = await coordinator.get_recommendations(driver_id, filters)
    except DataUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ComputationTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))

    return response.to_dict()


@router.post("/{driver_id}/prefetch", response_model=PrefetchResponse)
async def prefetch_recommendations(
    driver_id: str,
    coordinator: RecommendationCoordinator = Depends(get_coordinator),
):
    """Warm the cache for a driver's default recommendation list."""
    try:
        warmed = await coordinator.prefetch(driver_id)
    except DataUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return PrefetchResponse(driver_id=driver_id, warmed=warmed)
