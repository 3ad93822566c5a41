"""In-memory fleet metrics.

This module provides the FleetMetricsCollector class that accumulates spawn,
failure, retry and admission counters for the fleet. Counters live only in
memory and reset on process restart; the health API exposes a snapshot.

Counters are fed from two places:
- The saga records each successful spawn with its duration.
- ``attach(bus)`` subscribes a wildcard handler that tallies failures,
  retries and governor denials from the event stream.
The active agent gauge is set by the monitor after each cycle.

Usage:
    >>> from metrics import FleetMetricsCollector
    >>> collector = FleetMetricsCollector()
    >>> collector.attach(bus)
    >>> collector.record_spawn(1250.0)
    >>> collector.snapshot()  # FleetMetricsSnapshot(...)
"""

from dataclasses import asdict, dataclass

import structlog

from events.bus import WILDCARD, FleetEventBus
from events.types import FleetEvent, FleetEventType

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FleetMetricsSnapshot:
    """Read-only view of all fleet metrics at a point in time.

    Attributes:
        active_agents: Live tasks with a running agent after the last cycle.
        total_spawns: Successful spawns.
        total_failures: AGENT_FAILED events observed.
        total_retries: AGENT_RETRYING events observed.
        retry_rate: retries / (spawns + retries), 0 without data.
        avg_spawn_duration_ms: Mean saga duration of successful spawns.
        governor_denials: SPAWN_DENIED events observed.
    """

    active_agents: int
    total_spawns: int
    total_failures: int
    total_retries: int
    retry_rate: float
    avg_spawn_duration_ms: float
    governor_denials: int

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


class FleetMetricsCollector:
    """Monotonic fleet counters plus the active agent gauge."""

    def __init__(self) -> None:
        self.reset()
        logger.info("fleet_metrics_initialized")

    def record_spawn(self, duration_ms: float) -> None:
        self._total_spawns += 1
        self._total_spawn_duration_ms += duration_ms

    def record_failure(self) -> None:
        self._total_failures += 1

    def record_retry(self) -> None:
        self._total_retries += 1

    def record_governor_denial(self) -> None:
        self._governor_denials += 1

    def set_active_agents(self, count: int) -> None:
        self._active_agents = max(0, count)

    def attach(self, bus: FleetEventBus) -> None:
        """Tally failures, retries and denials from every event on the bus."""
        bus.on(WILDCARD, self._on_event)

    def detach(self, bus: FleetEventBus) -> None:
        bus.off(WILDCARD, self._on_event)

    def _on_event(self, event: FleetEvent) -> None:
        if event.type == FleetEventType.AGENT_FAILED:
            self.record_failure()
        elif event.type == FleetEventType.AGENT_RETRYING:
            self.record_retry()
        elif event.type == FleetEventType.SPAWN_DENIED:
            self.record_governor_denial()

    def snapshot(self) -> FleetMetricsSnapshot:
        """Compute a snapshot of the current counters."""
        denominator = self._total_spawns + self._total_retries
        retry_rate = self._total_retries / denominator if denominator else 0.0
        avg_duration = (
            self._total_spawn_duration_ms / self._total_spawns
            if self._total_spawns
            else 0.0
        )
        return FleetMetricsSnapshot(
            active_agents=self._active_agents,
            total_spawns=self._total_spawns,
            total_failures=self._total_failures,
            total_retries=self._total_retries,
            retry_rate=retry_rate,
            avg_spawn_duration_ms=avg_duration,
            governor_denials=self._governor_denials,
        )

    def reset(self) -> None:
        """Reset all counters and the gauge to zero."""
        self._active_agents = 0
        self._total_spawns = 0
        self._total_failures = 0
        self._total_retries = 0
        self._governor_denials = 0
        self._total_spawn_duration_ms = 0.0
