"""Compensating-transaction orchestration for the agent spawn lifecycle.

A spawn touches three systems (admission, the task store and the agent
runtime), so it cannot be a single atomic transaction. Instead it runs as a
saga: an ordered list of steps, each paired with a compensating action.

Steps:
    1. admit_and_insert: governor admission and insert
       (compensate: force the record to a terminal status, then delete it)
    2. transition_to_spawning: ``proposed -> spawning``
       (compensate: transition to ``failed``)
    3. spawn_agent: start the agent process
       (compensate: kill the agent, then clean up its handle)
    4. transition_to_running: ``spawning -> running`` with the process details
       (compensate: transition to ``failed``)

When a step fails, the steps that already completed are compensated in
reverse order. A failing compensation is recorded and the remaining
compensations still run.
"""

import hashlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

import structlog

from events.bus import FleetEventBus
from events.types import FleetEvent, FleetEventType
from fleet.protocols import AdmissionGovernor, LifecycleManager, TaskStoreProtocol
from metrics import FleetMetricsCollector
from models.errors import SpawnDeniedError
from models.schemas import (
    AgentHandle,
    ConvictionTier,
    CreateTaskInput,
    TaskQueryFilters,
    TaskRecord,
    TaskStatus,
    TransitionPatch,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SagaStep:
    """One forward action and its compensating action."""

    name: str
    execute: Callable[[], Awaitable[Any]]
    compensate: Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class SagaResult:
    """Outcome of a saga execution.

    Attributes:
        success: Whether every step completed.
        task_id: The task id, set on success and on partial completion.
        failed_step: Name of the step that failed.
        error: Error message of the failed step.
        compensation_errors: ``"step: message"`` for each failed compensation.
    """

    success: bool
    task_id: str | None = None
    failed_step: str | None = None
    error: str | None = None
    compensation_errors: list[str] = field(default_factory=list)


async def run_saga(steps: list[SagaStep]) -> tuple[SagaStep | None, Exception | None, list[str]]:
    """Run steps in order, compensating completed ones in reverse on failure.

    Returns:
        ``(failed_step, error, compensation_errors)``; the first two are None
        when every step succeeded.
    """
    completed: list[SagaStep] = []

    for step in steps:
        try:
            await step.execute()
        except Exception as e:
            logger.warning("saga_step_failed", step=step.name, error=str(e))
            compensation_errors: list[str] = []
            for done in reversed(completed):
                try:
                    await done.compensate()
                except Exception as comp_err:
                    logger.error(
                        "saga_compensation_failed",
                        step=done.name,
                        error=str(comp_err),
                    )
                    compensation_errors.append(f"{done.name}: {comp_err}")
            return step, e, compensation_errors
        completed.append(step)

    return None, None, []


class FleetSaga:
    """Drives a spawn request from admission to a running agent.

    Usage:
        >>> saga = FleetSaga(store, lifecycle, governor, bus)
        >>> token = FleetSaga.generate_idempotency_token(desc, operator_id)
        >>> result = await saga.execute_spawn(task_input, tier, prompt, token)
        >>> result.success, result.task_id
    """

    def __init__(
        self,
        store: TaskStoreProtocol,
        lifecycle: LifecycleManager,
        governor: AdmissionGovernor,
        event_bus: FleetEventBus,
        metrics: FleetMetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._governor = governor
        self._bus = event_bus
        self._metrics = metrics

    @staticmethod
    def generate_idempotency_token(
        description: str,
        operator_id: str,
        today: date | None = None,
    ) -> str:
        """SHA-256 of ``description|operator_id|YYYY-MM-DD`` (UTC day).

        Identical requests on the same calendar day map to the same token.
        """
        day = (today or datetime.now(UTC).date()).isoformat()
        return hashlib.sha256(f"{description}|{operator_id}|{day}".encode()).hexdigest()

    async def execute_spawn(
        self,
        task: CreateTaskInput,
        tier: ConvictionTier,
        prompt: str,
        idempotency_token: str,
    ) -> SagaResult:
        """Execute the spawn saga, compensating on failure.

        Never raises; failures are reported through the returned SagaResult.
        """
        started = time.monotonic()

        try:
            existing = await self._store.query(
                TaskQueryFilters(
                    context_hash=idempotency_token,
                    operator_id=task.operator_id,
                    limit=1,
                )
            )
        except Exception as e:
            logger.error(
                "saga_idempotency_check_failed",
                operator_id=task.operator_id,
                error=str(e),
            )
            return SagaResult(success=False, failed_step="idempotency_check", error=str(e))

        if existing:
            logger.info(
                "saga_duplicate_request",
                operator_id=task.operator_id,
                task_id=existing[0].id,
            )
            return SagaResult(success=True, task_id=existing[0].id)

        task = task.model_copy(update={"context_hash": idempotency_token})

        # Shared state across steps
        record: TaskRecord | None = None
        handle: AgentHandle | None = None

        async def admit() -> None:
            nonlocal record
            record = await self._governor.admit_and_insert(task, tier)

        async def remove_record() -> None:
            if record is None:
                return
            current = await self._store.get(record.id)
            if current is None:
                return
            current = await self._force_terminal(current)
            await self._store.delete(current.id)

        async def to_spawning() -> None:
            nonlocal record
            assert record is not None
            record = await self._store.transition(
                record.id, record.version, TaskStatus.SPAWNING
            )

        async def mark_failed() -> None:
            if record is None:
                return
            await self._store.transition(
                record.id,
                record.version,
                TaskStatus.FAILED,
                TransitionPatch(completed_at=datetime.now(UTC)),
            )

        async def spawn_agent() -> None:
            nonlocal handle
            assert record is not None
            handle = await self._lifecycle.spawn(
                record.id, record.branch, record.agent_type, prompt
            )

        async def kill_agent() -> None:
            if handle is None:
                return
            try:
                await self._lifecycle.kill(handle)
            finally:
                await self._lifecycle.cleanup(handle)

        async def to_running() -> None:
            nonlocal record
            assert record is not None and handle is not None
            record = await self._store.transition(
                record.id,
                record.version,
                TaskStatus.RUNNING,
                TransitionPatch(
                    worktree_path=handle.worktree_path,
                    process_ref=handle.process_ref,
                    process_mode=handle.mode,
                    spawned_at=handle.spawned_at,
                ),
            )

        steps = [
            SagaStep("admit_and_insert", admit, remove_record),
            SagaStep("transition_to_spawning", to_spawning, mark_failed),
            SagaStep("spawn_agent", spawn_agent, kill_agent),
            SagaStep("transition_to_running", to_running, mark_failed),
        ]

        failed_step, error, compensation_errors = await run_saga(steps)

        if failed_step is not None:
            if isinstance(error, SpawnDeniedError):
                await self._emit_spawn_denied(task, error)
            return SagaResult(
                success=False,
                task_id=record.id if record else None,
                failed_step=failed_step.name,
                error=str(error),
                compensation_errors=compensation_errors,
            )

        assert record is not None
        duration_ms = (time.monotonic() - started) * 1000
        if self._metrics is not None:
            self._metrics.record_spawn(duration_ms)

        await self._bus.emit(
            FleetEvent(
                type=FleetEventType.AGENT_SPAWNED,
                task_id=record.id,
                operator_id=task.operator_id,
                metadata={
                    "agentType": task.agent_type.value,
                    "branch": task.branch,
                    "tier": ConvictionTier(tier).value,
                },
            )
        )
        logger.info(
            "saga_completed",
            task_id=record.id,
            operator_id=task.operator_id,
            duration_ms=round(duration_ms, 1),
        )
        return SagaResult(success=True, task_id=record.id)

    async def _force_terminal(self, record: TaskRecord) -> TaskRecord:
        """Walk a record to a deletable terminal status."""
        if record.is_terminal:
            return record
        if record.status == TaskStatus.PROPOSED:
            return await self._store.transition(
                record.id, record.version, TaskStatus.CANCELLED
            )
        if record.is_live:
            record = await self._store.transition(
                record.id, record.version, TaskStatus.FAILED
            )
        return await self._store.transition(
            record.id, record.version, TaskStatus.ABANDONED
        )

    async def _emit_spawn_denied(self, task: CreateTaskInput, error: SpawnDeniedError) -> None:
        await self._bus.emit(
            FleetEvent(
                type=FleetEventType.SPAWN_DENIED,
                # No record exists for a denied request
                task_id="",
                operator_id=task.operator_id,
                metadata={
                    "reason": error.reason,
                    "tier": ConvictionTier(error.tier).value,
                    "activeCount": error.active_count,
                    "tierLimit": error.tier_limit,
                },
            )
        )
