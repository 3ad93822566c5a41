"""Typed event bus for fleet lifecycle events.

This module provides a FleetEventBus class that fans fleet events out to
in-process handlers and, when configured, passes them through to an external
message bus.

The event bus supports:
- Handlers registered per event type, plus wildcard ('*') handlers
- Sync or async handlers (awaitables are awaited)
- Per-handler error isolation (a failing handler never affects its siblings)
- Graceful degradation when the external bus is absent or disconnected
"""

import inspect
import threading
from collections.abc import Awaitable, Callable
from typing import Any, Literal, Protocol, runtime_checkable

import structlog

from events.types import FleetEvent, FleetEventType, HandlerError

logger = structlog.get_logger(__name__)

FleetEventHandler = Callable[[FleetEvent], Awaitable[None] | None]

WILDCARD: Literal["*"] = "*"

DEFAULT_SUBJECT_PREFIX = "dixie.fleet"


@runtime_checkable
class ExternalBusClient(Protocol):
    """Client for an external message bus (e.g. a NATS signal emitter)."""

    @property
    def connected(self) -> bool: ...

    async def publish(self, subject: str, payload: dict[str, Any]) -> None: ...


class FleetEventBus:
    """In-process pub/sub bus for fleet events with external pass-through.

    Handler execution semantics:
        Type-specific handlers run first, in registration order, followed by
        wildcard handlers, in registration order. Each handler is awaited
        before the next one starts. A handler that raises is logged with the
        event type and recorded as a ``HandlerError``; the remaining handlers
        still run.

    External Distribution:
        If an external bus client is configured and reports itself connected,
        the event is published on ``{subject_prefix}.{type_lowercased}``
        after all in-process handlers completed. Publish failures are logged,
        never raised.

    Usage:
        >>> bus = FleetEventBus()
        >>> bus.on(FleetEventType.AGENT_SPAWNED, on_spawned)
        >>> bus.on("*", audit_everything)
        >>> await bus.emit(FleetEvent(
        ...     type=FleetEventType.AGENT_SPAWNED,
        ...     task_id="task_123",
        ...     operator_id="op_1",
        ...     metadata={"agentType": "claude_code"},
        ... ))

    Attributes:
        _handlers: Dict mapping event type to its handlers in registration order
        _wildcard_handlers: Handlers receiving every event type
        _external: Optional external bus client
        _subject_prefix: Subject prefix for external publishes
    """

    def __init__(
        self,
        external_client: ExternalBusClient | None = None,
        subject_prefix: str = DEFAULT_SUBJECT_PREFIX,
    ) -> None:
        """Initialize an empty event bus.

        Args:
            external_client: Optional external bus client for pass-through publish
            subject_prefix: Prefix for external subjects (default: "dixie.fleet")
        """
        self._handlers: dict[FleetEventType, list[FleetEventHandler]] = {}
        self._wildcard_handlers: list[FleetEventHandler] = []
        self._external = external_client
        self._subject_prefix = subject_prefix
        logger.info(
            "fleet_event_bus_initialized",
            external_bus=external_client is not None,
            subject_prefix=subject_prefix,
        )

    # -----------------------------------------------------------------
    # Subscription API
    # -----------------------------------------------------------------

    def on(
        self,
        event_type: FleetEventType | Literal["*"],
        handler: FleetEventHandler,
    ) -> None:
        """Register a handler for an event type, or '*' for every event.

        Registering the same handler twice for the same type is a no-op.
        """
        if event_type == WILDCARD:
            handlers = self._wildcard_handlers
        else:
            handlers = self._handlers.setdefault(FleetEventType(event_type), [])
        if handler not in handlers:
            handlers.append(handler)

    def off(
        self,
        event_type: FleetEventType | Literal["*"],
        handler: FleetEventHandler,
    ) -> None:
        """Remove a previously registered handler. Unknown handlers are ignored."""
        if event_type == WILDCARD:
            if handler in self._wildcard_handlers:
                self._wildcard_handlers.remove(handler)
            return

        key = FleetEventType(event_type)
        handlers = self._handlers.get(key)
        if handlers is None or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[key]

    # -----------------------------------------------------------------
    # Emission API
    # -----------------------------------------------------------------

    async def emit(self, event: FleetEvent) -> list[HandlerError]:
        """Emit a fleet event to all matching handlers, then externally.

        Args:
            event: The FleetEvent to emit

        Returns:
            The handler failures captured during this emit (empty when every
            handler succeeded). Callers are free to ignore the result.
        """
        errors: list[HandlerError] = []

        # Snapshot so handlers may (un)subscribe while we iterate
        type_handlers = list(self._handlers.get(event.type, ()))
        wildcard_handlers = list(self._wildcard_handlers)

        for handler in type_handlers:
            error = await self._invoke(handler, event, "handler_error")
            if error is not None:
                errors.append(error)

        for handler in wildcard_handlers:
            error = await self._invoke(handler, event, "wildcard_error")
            if error is not None:
                errors.append(error)

        await self._publish_external(event)

        logger.debug(
            "fleet_event_emitted",
            event_type=event.type.value,
            task_id=event.task_id,
            handler_count=len(type_handlers) + len(wildcard_handlers),
            handler_errors=len(errors),
        )
        return errors

    async def _invoke(
        self,
        handler: FleetEventHandler,
        event: FleetEvent,
        kind: Literal["handler_error", "wildcard_error"],
    ) -> HandlerError | None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log_event = (
                "fleet_event_handler_error"
                if kind == "handler_error"
                else "fleet_event_wildcard_handler_error"
            )
            logger.error(
                log_event,
                event_type=event.type.value,
                task_id=event.task_id,
                error=str(e),
            )
            return HandlerError(kind=kind, event_type=event.type, error=str(e))
        return None

    async def _publish_external(self, event: FleetEvent) -> None:
        client = self._external
        if client is None or not client.connected:
            return

        subject = f"{self._subject_prefix}.{event.subject_suffix}"
        try:
            await client.publish(subject, event.to_wire())
        except Exception as e:
            logger.warning(
                "fleet_event_external_publish_failed",
                event_type=event.type.value,
                task_id=event.task_id,
                subject=subject,
                error=str(e),
            )

    # -----------------------------------------------------------------
    # Diagnostics
    # -----------------------------------------------------------------

    @property
    def handler_count(self) -> int:
        """Number of registered handlers (type-specific + wildcard)."""
        return len(self._wildcard_handlers) + sum(
            len(handlers) for handlers in self._handlers.values()
        )

    def remove_all_handlers(self) -> None:
        """Remove every handler. Useful for test cleanup."""
        self._handlers.clear()
        self._wildcard_handlers.clear()


# Global event bus instance
_event_bus: FleetEventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> FleetEventBus:
    """Get the global FleetEventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global FleetEventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = FleetEventBus()
    return _event_bus


def set_event_bus(bus: FleetEventBus) -> None:
    """Install a configured bus (e.g. one with an external client) as the global."""
    global _event_bus
    with _bus_lock:
        _event_bus = bus


def reset_event_bus() -> None:
    """Reset the global FleetEventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("fleet_event_bus_reset")
