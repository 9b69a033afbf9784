"""
HTTP API tests. The coordinator is built on the in-memory ledger and put
into app.state directly, so the production lifespan never runs.
"""

import pytest
import time
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.api.coordinator import router as coordinator_router
from backend.api.matches import router as matches_router
from backend.coordinators.match_coordinator import MatchCoordinator
from backend.handlers.metrics_handler import MetricsHandler
from match_keeper.config import SettlementPolicy


@pytest.fixture
def coordinator(ledger, event_bus) -> MatchCoordinator:
    return MatchCoordinator(
        ledger,
        event_bus,
        poll_interval=0.05,
        policy=SettlementPolicy(read_timeout=0.5, call_timeout=1.0),
        drain_timeout=1.0,
    )


@pytest.fixture
def app(coordinator, event_bus) -> FastAPI:
    app = FastAPI()
    app.include_router(matches_router)
    app.include_router(coordinator_router)
    metrics = MetricsHandler()
    metrics.register(event_bus)
    app.state.event_bus = event_bus
    app.state.match_coordinator = coordinator
    app.state.metrics_handler = metrics
    return app


@pytest.fixture
def tracked(coordinator, make_match):
    """Two tracked matches: one active far from its deadline, one concluded."""
    far = time.time() + 3600
    coordinator.registry.insert(make_match("0xactive", deadline=far, discovered_at=1.0))
    coordinator.registry.insert(make_match("0xdone", deadline=far, discovered_at=2.0))
    coordinator.registry.update("0xdone", lambda m: m.conclude(time.time()))
    return far


@pytest.mark.integration
class TestMatchesAPI:

    def test_list_matches(self, app, tracked):
        client = TestClient(app)
        response = client.get("/api/matches")

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert [m["address"] for m in body["matches"]] == ["0xactive", "0xdone"]

    def test_filter_by_state(self, app, tracked):
        client = TestClient(app)
        response = client.get("/api/matches", params={"state": "concluded"})

        assert response.status_code == 200
        assert [m["address"] for m in response.json()["matches"]] == ["0xdone"]

    def test_invalid_state_filter(self, app, tracked):
        client = TestClient(app)
        assert client.get("/api/matches", params={"state": "bogus"}).status_code == 422

    def test_get_match(self, app, tracked):
        client = TestClient(app)
        response = client.get("/api/matches/0xactive")

        assert response.status_code == 200
        body = response.json()
        assert body["lifecycle_state"] == "active"
        assert body["round_deadline"] == tracked

    def test_unknown_match_is_404(self, app):
        client = TestClient(app)
        assert client.get("/api/matches/0xnope").status_code == 404


@pytest.mark.integration
class TestCoordinatorAPI:

    def test_status_when_stopped(self, app):
        client = TestClient(app)
        body = client.get("/api/coordinator").json()

        assert body["running"] is False
        assert body["tracked_matches"] == 0

    def test_manual_cycle(self, app, ledger, rs, tracked):
        ledger.round_states["0xactive"] = rs(tracked)
        client = TestClient(app)

        body = client.post("/api/coordinator/cycle").json()

        assert body["evaluated"] == 1
        assert body["dispatched"] == 0

    def test_start_and_stop(self, app):
        # One portal for the whole block, so background tasks survive between requests
        with TestClient(app) as client:
            started = client.post("/api/coordinator/start").json()
            assert started["changed"] is True
            assert started["status"]["running"] is True

            again = client.post("/api/coordinator/start").json()
            assert again["changed"] is False

            stopped = client.post("/api/coordinator/stop").json()
            assert stopped["changed"] is True
            assert stopped["status"]["running"] is False


@pytest.mark.integration
class TestServiceEndpoints:

    @pytest.fixture
    def service_app(self, coordinator, event_bus):
        from backend.main import app as service_app

        metrics = MetricsHandler()
        metrics.register(event_bus)
        service_app.state.match_coordinator = coordinator
        service_app.state.metrics_handler = metrics
        return service_app

    def test_health(self, service_app):
        client = TestClient(service_app)
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["coordinator_running"] is False

    def test_stats(self, service_app, event_bus):
        client = TestClient(service_app)
        body = client.get("/stats").json()

        assert body["coordinator"]["running"] is False
        assert body["metrics"]["settlements"]["total"] == 0
        assert body["recent_events"] == []
