from fastapi import Request
from backend.coordinators.match_coordinator import MatchCoordinator
from backend.handlers.metrics_handler import MetricsHandler

def get_match_coordinator(request: Request) -> MatchCoordinator:
    """Dependency to get the MatchCoordinator from app state."""
    return request.app.state.match_coordinator

def get_metrics_handler(request: Request) -> MetricsHandler:
    """Dependency to get the MetricsHandler from app state."""
    return request.app.state.metrics_handler
