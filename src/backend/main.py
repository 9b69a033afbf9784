import logging
import uvicorn
from contextlib import asynccontextmanager
from typing import Annotated
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from backend.config import config
from backend.api.matches import router as matches_router
from backend.api.coordinator import router as coordinator_router
from backend.coordinators.match_coordinator import MatchCoordinator
from backend.dependencies import get_match_coordinator, get_metrics_handler
from backend.handlers.metrics_handler import MetricsHandler
from backend.models.api_models import CoordinatorStatus, StatsResponse
from match_keeper import EventBus
from match_keeper.config import LedgerConfig, SettlementPolicy
from match_keeper.ledger import Web3LedgerClient

# Configure unified logging to match match_keeper style
from match_keeper.logging_config import setup_logging
setup_logging(level=config.log_level, use_rich=config.rich_logging)

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logger.info("Starting Match Keeper...")

    event_bus = EventBus()

    ledger_config = LedgerConfig.from_env()
    ledger = Web3LedgerClient(ledger_config)
    logger.info(f"Web3LedgerClient created for {ledger_config.rpc_url}")

    coordinator = MatchCoordinator(
        ledger,
        event_bus,
        poll_interval=config.poll_interval,
        eviction_grace=config.eviction_grace,
        policy=SettlementPolicy.from_env(),
        drain_timeout=config.drain_timeout,
        resubscribe_delay=config.resubscribe_delay,
    )

    metrics_handler = MetricsHandler()
    metrics_handler.register(event_bus)
    logger.info("Event handlers registered")

    app.state.event_bus = event_bus
    app.state.match_coordinator = coordinator
    app.state.metrics_handler = metrics_handler

    if config.autostart:
        await coordinator.start()
    else:
        logger.info("Autostart disabled; POST /api/coordinator/start to begin")

    logger.info("Match Keeper startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Match Keeper...")
    await coordinator.shutdown()
    logger.info("Match Keeper shutdown complete")

app = FastAPI(
    title="Match Keeper",
    description="Discovers ledger matches and settles their rounds on time",
    version="0.1.0",
    debug=config.debug,
    lifespan=lifespan
)

app.include_router(matches_router)
app.include_router(coordinator_router)

@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "message": "Match Keeper",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
        "stats": "/stats",
        "matches": "/api/matches",
        "coordinator": "/api/coordinator",
    }

@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    coordinator = getattr(request.app.state, "match_coordinator", None)
    return {
        "status": "healthy",
        "service": "match-keeper",
        "version": "0.1.0",
        "coordinator_running": bool(coordinator and coordinator.is_running),
    }

@app.get("/stats", response_model=StatsResponse)
async def get_stats(
    coordinator: Annotated[MatchCoordinator, Depends(get_match_coordinator)],
    metrics: Annotated[MetricsHandler, Depends(get_metrics_handler)],
) -> StatsResponse:
    """Coordinator status, settlement metrics and the most recent events."""
    return StatsResponse(
        coordinator=CoordinatorStatus(**coordinator.get_status()),
        metrics=metrics.get_snapshot(),
        recent_events=metrics.get_recent_events(),
    )

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logging.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )

if __name__ == "__main__":
    uvicorn.run(
        "backend.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="info"
    )
