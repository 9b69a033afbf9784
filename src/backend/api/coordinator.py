from fastapi import APIRouter, Depends
from typing import Annotated
import logging

from match_keeper.models import CycleReport
from backend.coordinators.match_coordinator import MatchCoordinator
from backend.dependencies import get_match_coordinator
from backend.models.api_models import ControlResponse, CoordinatorStatus

router = APIRouter(prefix="/api/coordinator", tags=["coordinator"])
logger = logging.getLogger(__name__)

MatchCoordinatorDep = Annotated[MatchCoordinator, Depends(get_match_coordinator)]

@router.get("", response_model=CoordinatorStatus)
async def get_status(coordinator: MatchCoordinatorDep) -> CoordinatorStatus:
    """Current coordinator status."""
    return CoordinatorStatus(**coordinator.get_status())

@router.post("/start", response_model=ControlResponse)
async def start_coordinator(coordinator: MatchCoordinatorDep) -> ControlResponse:
    """Start discovery and the scheduler loop."""
    logger.info("Operator requested coordinator start")
    changed = await coordinator.start()
    return ControlResponse(changed=changed, status=CoordinatorStatus(**coordinator.get_status()))

@router.post("/stop", response_model=ControlResponse)
async def stop_coordinator(coordinator: MatchCoordinatorDep) -> ControlResponse:
    """Stop ticking and drain in-flight settlements. Tracked matches are kept."""
    logger.info("Operator requested coordinator stop")
    changed = await coordinator.stop()
    return ControlResponse(changed=changed, status=CoordinatorStatus(**coordinator.get_status()))

@router.post("/cycle", response_model=CycleReport)
async def run_cycle(coordinator: MatchCoordinatorDep) -> CycleReport:
    """Run one scheduler cycle now."""
    return await coordinator.run_cycle_now()
