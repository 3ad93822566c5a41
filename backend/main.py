"""FastAPI application entry point for the fleet orchestration backend.

This module wires the orchestration core (task store, event bus, governor,
lifecycle manager, saga, monitor and outbox worker) into the application
lifespan and exposes the health endpoints.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from api.routes import FleetServices, router, set_fleet_services
from config import configure_logging, settings
from events import FleetEventBus, set_event_bus
from fleet import (
    FleetGovernor,
    FleetMonitor,
    FleetSaga,
    MonitorConfig,
    OutboxWorker,
    OutboxWorkerConfig,
    bus_delivery,
)
from lifecycle import DockerLifecycleManager
from metrics import FleetMetricsCollector
from models.database import TaskStore
from scm import GitHubCli

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Startup initializes the store, reconciles and starts the monitor, and
    starts the outbox worker. Shutdown stops both loops.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        database_path=settings.database_path,
    )

    store = TaskStore(settings.database_path)
    await store.init()

    event_bus = FleetEventBus(subject_prefix=settings.event_subject_prefix)
    set_event_bus(event_bus)
    metrics_collector = FleetMetricsCollector()
    metrics_collector.attach(event_bus)

    governor = FleetGovernor(store, tier_limits=settings.tier_limits)
    lifecycle = DockerLifecycleManager(
        image_name=settings.agent_image,
        worktree_base_dir=settings.worktree_base_dir,
    )
    saga = FleetSaga(store, lifecycle, governor, event_bus, metrics=metrics_collector)

    monitor = FleetMonitor(
        store,
        lifecycle,
        MonitorConfig(
            interval_ms=settings.monitor_interval_ms,
            cycle_deadline_ms=settings.monitor_cycle_deadline_ms,
            stall_threshold_sec=settings.monitor_stall_threshold_sec,
            timeout_minutes=settings.monitor_timeout_minutes,
        ),
        github=GitHubCli(settings.gh_binary, settings.gh_timeout_seconds),
        metrics=metrics_collector,
    )
    outbox = OutboxWorker(
        store,
        bus_delivery(event_bus),
        OutboxWorkerConfig(
            poll_interval_ms=settings.outbox_poll_interval_ms,
            batch_size=settings.outbox_batch_size,
            max_retries=settings.outbox_max_retries,
            claim_lease_seconds=settings.outbox_claim_lease_seconds,
        ),
    )

    # Store on app.state for access by embedding callers
    app.state.store = store
    app.state.saga = saga
    app.state.governor = governor
    app.state.monitor = monitor
    app.state.outbox = outbox

    set_fleet_services(
        FleetServices(
            monitor=monitor,
            outbox=outbox,
            metrics=metrics_collector,
            lifecycle=lifecycle,
        )
    )

    await monitor.start()
    outbox.start()
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    monitor.stop()
    await outbox.stop()
    metrics_collector.detach(event_bus)
    set_fleet_services(None)
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Fleet Orchestrator",
    description="Orchestration core for a fleet of autonomous coding agents: "
    "spawn saga, health monitor and transactional event outbox.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(router, tags=["health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
