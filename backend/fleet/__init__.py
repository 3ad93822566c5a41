"""Fleet orchestration core.

Key Components:
    - FleetSaga: spawn saga with reverse-order compensation and idempotency
    - FleetMonitor: startup reconciliation plus periodic health cycles
    - OutboxWorker: at-least-once delivery of transactionally queued events
    - FleetGovernor: conviction-tier spawn admission
"""

from fleet.governor import DEFAULT_TIER_LIMITS, FleetGovernor
from fleet.monitor import (
    FleetMonitor,
    MonitorConfig,
    MonitorCycleResult,
    MonitorHealth,
    ReconcileResult,
)
from fleet.outbox import (
    OutboxEntry,
    OutboxWorker,
    OutboxWorkerConfig,
    bus_delivery,
    external_bus_delivery,
)
from fleet.saga import FleetSaga, SagaResult, SagaStep, run_saga

__all__ = [
    "DEFAULT_TIER_LIMITS",
    "FleetGovernor",
    "FleetMonitor",
    "FleetSaga",
    "MonitorConfig",
    "MonitorCycleResult",
    "MonitorHealth",
    "OutboxEntry",
    "OutboxWorker",
    "OutboxWorkerConfig",
    "ReconcileResult",
    "SagaResult",
    "SagaStep",
    "bus_delivery",
    "external_bus_delivery",
    "run_saga",
]
