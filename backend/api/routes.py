"""HTTP health surface for the fleet orchestration backend.

Only two read-only endpoints exist: process liveness and fleet health.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, HTTPException, status

from models.schemas import FleetHealthResponse, HealthResponse

if TYPE_CHECKING:
    from fleet.monitor import FleetMonitor
    from fleet.outbox import OutboxWorker
    from lifecycle.docker_lifecycle import DockerLifecycleManager
    from metrics import FleetMetricsCollector

logger = structlog.get_logger(__name__)

router = APIRouter()


@dataclass
class FleetServices:
    """The running components the health endpoints report on."""

    monitor: FleetMonitor
    outbox: OutboxWorker
    metrics: FleetMetricsCollector
    lifecycle: DockerLifecycleManager


_services: FleetServices | None = None


def set_fleet_services(services: FleetServices | None) -> None:
    """Set the fleet components for the routes.

    This should be called during application startup.
    """
    global _services
    _services = services
    logger.info("fleet_services_configured", configured=services is not None)


def get_fleet_services() -> FleetServices:
    """Get the configured fleet components.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("fleet_services_not_configured")
        raise RuntimeError(
            "Fleet services not configured. Call set_fleet_services() during startup."
        )
    return _services


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Liveness check for the backend process.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status="healthy")


@router.get(
    "/fleet/health",
    response_model=FleetHealthResponse,
    summary="Fleet health",
    description="Monitor loop status, outbox backlog and fleet metrics.",
)
async def fleet_health() -> FleetHealthResponse:
    """Report the health of the orchestration core.

    The fleet is ``degraded`` when the monitor loop is not running or the
    outbox holds dead-lettered entries.
    """
    try:
        services = get_fleet_services()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Fleet services are not initialized",
        ) from None

    monitor_health = services.monitor.get_health()
    try:
        pending = await services.outbox.pending_count()
        dead_letter = await services.outbox.dead_letter_count()
    except Exception as e:
        logger.error("fleet_health_outbox_query_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Outbox is unavailable",
        ) from e

    healthy = monitor_health.running and dead_letter == 0
    return FleetHealthResponse(
        status="healthy" if healthy else "degraded",
        monitor=monitor_health.to_dict(),
        outbox_pending=pending,
        outbox_dead_letter=dead_letter,
        metrics=services.metrics.snapshot().to_dict(),
        docker_available=await services.lifecycle.is_docker_available(),
    )
