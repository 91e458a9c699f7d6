"""Cache management API endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from gridpilot.api.dependencies import get_coordinator
from gridpilot.services.recommendations import RecommendationCoordinator

router = APIRouter(prefix="/api/cache", tags=["cache"])


class InvalidateRequest(BaseModel):
    """Exactly one of the fields must be set."""

    driver_id: str | None = None
    opportunity_key: str | None = None
    all: bool = False


class InvalidateResponse(BaseModel):
    dropped: int


@router.post("/clear")
async def clear_cache(coordinator: RecommendationCoordinator = Depends(get_coordinator)):
    """Drop every cached list and memoized baseline."""
    coordinator.clear_caches()
    return {"status": "cleared"}


@router.post("/invalidate", response_model=InvalidateResponse)
async def invalidate_cache(
    request: InvalidateRequest,
    coordinator: RecommendationCoordinator = Depends(get_coordinator),
):
    """Invalidate cached lists for a driver, an opportunity, or everything."""
    try:
        dropped = coordinator.invalidate(
            driver_id=request.driver_id,
            opportunity_key=request.opportunity_key,
            all=request.all,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return InvalidateResponse(dropped=dropped)


@router.get("/metrics")
async def cache_metrics(
    coordinator: RecommendationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Cache size and hit/miss statistics."""
    return coordinator.get_cache_metrics()
