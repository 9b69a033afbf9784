from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from match_keeper.models import CycleReport, Match

class MatchListResponse(BaseModel):
    """Tracked matches."""
    count: int = Field(..., description="Number of tracked matches")
    matches: List[Match] = Field(default_factory=list)

class CoordinatorStatus(BaseModel):
    """Lifecycle and loop status of the coordinator."""
    running: bool
    started_at: Optional[str] = None
    poll_interval: float
    eviction_grace: float
    cycles: int = 0
    tracked_matches: int = 0
    matches_by_state: Dict[str, int] = Field(default_factory=dict)
    settlements_in_flight: int = 0
    discovered: int = 0
    last_cycle: Optional[CycleReport] = None

class ControlResponse(BaseModel):
    """Result of a start/stop request."""
    changed: bool = Field(..., description="False when the coordinator was already in the requested state")
    status: CoordinatorStatus

class StatsResponse(BaseModel):
    """Coordinator status plus aggregated event metrics."""
    coordinator: CoordinatorStatus
    metrics: Dict[str, Any]
    recent_events: List[Dict[str, Any]] = Field(default_factory=list)
