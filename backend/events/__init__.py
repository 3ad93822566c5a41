"""Event system for fleet lifecycle distribution.

This package provides the event infrastructure the orchestration core uses
to announce lifecycle changes: a typed in-process bus with optional
pass-through to an external message bus.

Key Components:
    - FleetEventType: Enum of all fleet event types
    - FleetEvent: Immutable Pydantic model for events flowing through the bus
    - FleetEventBus: Typed pub/sub with wildcard handlers and error isolation
    - ExternalBusClient: Protocol for the optional external bus

Usage:
    >>> from events import FleetEvent, FleetEventType, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> bus.on(FleetEventType.AGENT_FAILED, page_operator)
    >>> await bus.emit(FleetEvent(
    ...     type=FleetEventType.AGENT_FAILED,
    ...     task_id="task_123",
    ...     metadata={"reason": "agent_died"},
    ... ))

Event Flow:
    1. The saga or outbox worker calls FleetEventBus.emit()
    2. Type-specific handlers run, then wildcard handlers
    3. If an external client is connected, the event is published on
       ``{prefix}.{type_lowercased}``
"""

from events.bus import (
    WILDCARD,
    ExternalBusClient,
    FleetEventBus,
    FleetEventHandler,
    get_event_bus,
    reset_event_bus,
    set_event_bus,
)
from events.types import (
    FleetEvent,
    FleetEventType,
    HandlerError,
    utc_now_iso,
)

__all__ = [
    # Event types
    "FleetEventType",
    "FleetEvent",
    "HandlerError",
    "utc_now_iso",
    # Event bus
    "WILDCARD",
    "ExternalBusClient",
    "FleetEventBus",
    "FleetEventHandler",
    "get_event_bus",
    "reset_event_bus",
    "set_event_bus",
]
