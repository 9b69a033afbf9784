from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Annotated, Optional
import logging

from match_keeper.models import LifecycleState, Match
from backend.coordinators.match_coordinator import MatchCoordinator
from backend.dependencies import get_match_coordinator
from backend.models.api_models import MatchListResponse

router = APIRouter(prefix="/api/matches", tags=["matches"])
logger = logging.getLogger(__name__)

MatchCoordinatorDep = Annotated[MatchCoordinator, Depends(get_match_coordinator)]

@router.get("", response_model=MatchListResponse)
async def list_matches(
    coordinator: MatchCoordinatorDep,
    state: Optional[LifecycleState] = Query(None, description="Only matches in this lifecycle state"),
) -> MatchListResponse:
    """List tracked matches, oldest first."""
    matches = coordinator.get_tracked_matches()
    if state is not None:
        matches = [m for m in matches if m.lifecycle_state == state]
    return MatchListResponse(count=len(matches), matches=matches)

@router.get("/{address}", response_model=Match)
async def get_match(address: str, coordinator: MatchCoordinatorDep) -> Match:
    """Get the cached state of one tracked match."""
    match = coordinator.get_match(address)
    if not match:
        raise HTTPException(
            status_code=404,
            detail=f"Match {address} is not tracked"
        )
    return match
