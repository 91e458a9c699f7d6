"""Recommendation caching and orchestration."""

from gridpilot.services.recommendations.cache import CacheKey, CacheState, CacheStore
from gridpilot.services.recommendations.coordinator import (
    RankedList,
    RecommendationCoordinator,
    RecommendationResponse,
    current_season,
)
from gridpilot.services.recommendations.filters import RecommendationFilters

__all__ = [
    "CacheKey",
    "CacheState",
    "CacheStore",
    "RankedList",
    "RecommendationCoordinator",
    "RecommendationFilters",
    "RecommendationResponse",
    "current_season",
]
