"""Tests for api/routes.py -- HTTP health endpoints.

Uses FastAPI TestClient (backed by httpx) with mocked fleet components.
No real Docker, database or ``gh`` calls are made.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.routes import FleetServices, router, set_fleet_services
from fleet.monitor import MonitorHealth
from metrics import FleetMetricsCollector

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def services() -> FleetServices:
    """Create mocked fleet components in a healthy state."""
    monitor = MagicMock()
    monitor.get_health = MagicMock(
        return_value=MonitorHealth(running=True, last_cycle_ms=12.5, cycle_count=4, errors=0)
    )
    outbox = MagicMock()
    outbox.pending_count = AsyncMock(return_value=2)
    outbox.dead_letter_count = AsyncMock(return_value=0)
    lifecycle = MagicMock()
    lifecycle.is_docker_available = AsyncMock(return_value=True)
    metrics = FleetMetricsCollector()
    metrics.record_spawn(100.0)
    return FleetServices(
        monitor=monitor,
        outbox=outbox,
        metrics=metrics,
        lifecycle=lifecycle,
    )


@pytest.fixture()
def client(services: FleetServices) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with mocked fleet components."""
    app = FastAPI()
    app.include_router(router)
    set_fleet_services(services)
    with TestClient(app) as c:
        yield c
    set_fleet_services(None)


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"


# =========================================================================
# Fleet Health
# =========================================================================


class TestFleetHealth:
    """GET /fleet/health."""

    def test_healthy(self, client: TestClient) -> None:
        resp = client.get("/fleet/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["monitor"] == {
            "running": True,
            "lastCycleMs": 12.5,
            "cycleCount": 4,
            "errors": 0,
        }
        assert data["outbox_pending"] == 2
        assert data["outbox_dead_letter"] == 0
        assert data["metrics"]["total_spawns"] == 1
        assert data["metrics"]["avg_spawn_duration_ms"] == 100.0
        assert data["docker_available"] is True

    def test_degraded_when_dead_letters(
        self, client: TestClient, services: FleetServices
    ) -> None:
        services.outbox.dead_letter_count = AsyncMock(return_value=3)
        data = client.get("/fleet/health").json()
        assert data["status"] == "degraded"
        assert data["outbox_dead_letter"] == 3

    def test_degraded_when_monitor_stopped(
        self, client: TestClient, services: FleetServices
    ) -> None:
        services.monitor.get_health.return_value = MonitorHealth(
            running=False, last_cycle_ms=0.0, cycle_count=0, errors=0
        )
        assert client.get("/fleet/health").json()["status"] == "degraded"

    def test_docker_unreachable_reported(
        self, client: TestClient, services: FleetServices
    ) -> None:
        services.lifecycle.is_docker_available = AsyncMock(return_value=False)
        data = client.get("/fleet/health").json()
        assert data["docker_available"] is False
        services.lifecycle.is_docker_available.assert_awaited_once()

    def test_outbox_failure_returns_503(
        self, client: TestClient, services: FleetServices
    ) -> None:
        services.outbox.pending_count = AsyncMock(side_effect=RuntimeError("db locked"))
        resp = client.get("/fleet/health")
        assert resp.status_code == 503

    def test_unconfigured_returns_503(self) -> None:
        app = FastAPI()
        app.include_router(router)
        set_fleet_services(None)
        with TestClient(app) as c:
            resp = c.get("/fleet/health")
        assert resp.status_code == 503
        assert "not initialized" in resp.json()["detail"]
