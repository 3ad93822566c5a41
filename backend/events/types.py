"""Event type definitions for the fleet event system.

This module defines the lifecycle events fanned out by the FleetEventBus and
durably queued through the transactional outbox. Every externally visible
fleet state change produces one of these events.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


class FleetEventType(StrEnum):
    """All fleet lifecycle event types.

    Events are categorized by:
    - Agent lifecycle: spawn, completion, failure, retry and cancellation
    - Fleet capacity: warnings when the fleet nears its limits
    - Admission: spawn requests refused by the governor
    """

    # Agent lifecycle
    AGENT_SPAWNED = "AGENT_SPAWNED"
    AGENT_COMPLETED = "AGENT_COMPLETED"
    AGENT_FAILED = "AGENT_FAILED"
    AGENT_RETRYING = "AGENT_RETRYING"
    AGENT_CANCELLED = "AGENT_CANCELLED"

    # Fleet capacity
    FLEET_CAPACITY_WARNING = "FLEET_CAPACITY_WARNING"
    FLEET_CAPACITY_RESTORED = "FLEET_CAPACITY_RESTORED"

    # Admission
    SPAWN_DENIED = "SPAWN_DENIED"


class FleetEvent(BaseModel):
    """A fleet lifecycle event. Immutable once constructed.

    Serialized on the wire with camelCase keys:

        {"type": "AGENT_SPAWNED", "taskId": "...", "operatorId": "...",
         "timestamp": "2026-10-18T09:00:00+00:00", "metadata": {...}}

    Metadata by event type:

    AGENT_SPAWNED:
        - agentType: str - The agent runtime
        - branch: str - Branch the agent works on
        - tier: str - Conviction tier of the requesting operator

    AGENT_FAILED:
        - reason: str - ``agent_died``, ``timeout`` or ``orphaned_on_reconcile``
        - previousStatus: str - Status before the failure transition

    SPAWN_DENIED:
        - reason: str - ``tier_not_permitted`` or ``tier_limit_exceeded``
        - tier: str - Conviction tier
        - activeCount: int - Operator's active task count at admission
        - tierLimit: int - Limit for the tier
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    type: FleetEventType
    task_id: str
    operator_id: str | None = None
    timestamp: str = Field(default_factory=utc_now_iso)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible wire shape (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def subject_suffix(self) -> str:
        """Lowercased event type, used to build external bus subjects."""
        return self.type.value.lower()


@dataclass(frozen=True)
class HandlerError:
    """A handler failure captured during ``emit`` instead of being raised."""

    kind: Literal["handler_error", "wildcard_error"]
    event_type: FleetEventType
    error: str
