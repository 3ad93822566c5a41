"""Agent health monitoring and startup reconciliation.

The FleetMonitor has two jobs:

Reconcile (once, on start):
    Compare live task records against the agent processes the lifecycle
    manager actually reports. ``spawning``/``running`` records without a
    process are marked ``failed``; ``pr_created``/``reviewing`` records
    without one are only logged. Processes without a record are logged as
    untracked and left alone.

Cycle (every ``interval_ms``):
    For each live task, independently of the others: check liveness, detect
    a new PR, refresh CI status, flag stalls and enforce the timeout.

Ticks never overlap. If the previous cycle is still running when the timer
fires, the tick is skipped rather than queued.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from events.types import FleetEvent, FleetEventType
from fleet.protocols import (
    IdentityRecorder,
    InsightHarvester,
    LifecycleManager,
    TaskStoreProtocol,
)
from metrics import FleetMetricsCollector
from models.database import OutboxMessage
from models.schemas import (
    AgentHandle,
    ProcessMode,
    TaskRecord,
    TaskStatus,
    TransitionPatch,
)
from scm.github_cli import GitHubCli

logger = structlog.get_logger(__name__)

# Statuses whose agent must still be running
_PROCESS_REQUIRED = frozenset({TaskStatus.SPAWNING, TaskStatus.RUNNING})

_OUTCOMES = {
    TaskStatus.FAILED: "failed",
    TaskStatus.MERGED: "merged",
    TaskStatus.ABANDONED: "abandoned",
    TaskStatus.CANCELLED: "abandoned",
}


@dataclass(frozen=True)
class MonitorConfig:
    interval_ms: int = 30_000
    cycle_deadline_ms: int = 25_000
    stall_threshold_sec: int = 1800
    timeout_minutes: int = 120


@dataclass
class ReconcileResult:
    orphaned_marked_failed: int = 0
    untracked_processes: int = 0
    orphaned_task_ids: list[str] = field(default_factory=list)
    untracked_task_ids: list[str] = field(default_factory=list)


@dataclass
class MonitorCycleResult:
    tasks_checked: int = 0
    dead_agents_detected: int = 0
    prs_detected: int = 0
    ci_updates: int = 0
    stalls_detected: int = 0
    timeouts_triggered: int = 0
    timeouts_marked_failed: int = 0
    error_task_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MonitorHealth:
    running: bool
    last_cycle_ms: float
    cycle_count: int
    errors: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "lastCycleMs": self.last_cycle_ms,
            "cycleCount": self.cycle_count,
            "errors": self.errors,
        }


def build_handle(task: TaskRecord) -> AgentHandle | None:
    """Rebuild an agent handle from a task record, or None without a process_ref."""
    if not task.process_ref:
        return None
    return AgentHandle(
        task_id=task.id,
        branch=task.branch,
        worktree_path=task.worktree_path or "",
        process_ref=task.process_ref,
        mode=task.process_mode or ProcessMode.LOCAL,
        spawned_at=task.spawned_at or task.created_at,
    )


def _elapsed_since(moment: datetime, now: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return (now - moment).total_seconds()


class FleetMonitor:
    """Periodic health checks over live fleet tasks.

    Usage:
        >>> monitor = FleetMonitor(store, lifecycle, MonitorConfig(interval_ms=10_000))
        >>> reconcile_result = await monitor.start()
        >>> ...
        >>> monitor.stop()
    """

    def __init__(
        self,
        store: TaskStoreProtocol,
        lifecycle: LifecycleManager,
        config: MonitorConfig | None = None,
        *,
        github: GitHubCli | None = None,
        identity_service: IdentityRecorder | None = None,
        insight_service: InsightHarvester | None = None,
        metrics: FleetMetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self.config = config or MonitorConfig()
        self._github = github or GitHubCli()
        self._identity = identity_service
        self._insights = insight_service
        self._metrics = metrics

        self._loop_task: asyncio.Task[None] | None = None
        self._tick_tasks: set[asyncio.Task[None]] = set()
        self._cycle_in_progress = False

        self._running = False
        self._last_cycle_ms = 0.0
        self._cycle_count = 0
        self._errors = 0

    # -----------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------

    async def reconcile(self) -> ReconcileResult:
        """Reconcile live task records against running agent processes."""
        logger.info("reconcile_started")
        result = ReconcileResult()
        marked_failed = 0

        live_tasks = {task.id: task for task in await self._store.list_live()}
        handles = await self._lifecycle.list_active()
        active_ids = {handle.task_id for handle in handles}

        for task_id, task in live_tasks.items():
            if task_id in active_ids:
                continue
            result.orphaned_task_ids.append(task_id)
            try:
                if task.status in _PROCESS_REQUIRED:
                    now = datetime.now(UTC)
                    await self._fail_task(
                        task,
                        {
                            "reason": "orphaned_on_reconcile",
                            "message": (
                                f"Task {task_id} was in '{task.status}' "
                                "but no agent process was found"
                            ),
                            "reconciledAt": now.isoformat(),
                        },
                        now,
                    )
                    marked_failed += 1
                    logger.warning(
                        "reconcile_orphan_marked_failed",
                        task_id=task_id,
                        previous_status=task.status.value,
                    )
                else:
                    logger.warning(
                        "reconcile_orphan_detected",
                        task_id=task_id,
                        status=task.status.value,
                    )
            except Exception as e:
                logger.error(
                    "reconcile_orphan_failed",
                    task_id=task_id,
                    error=str(e),
                )

        for handle in handles:
            if handle.task_id in live_tasks:
                continue
            result.untracked_task_ids.append(handle.task_id)
            logger.warning(
                "reconcile_untracked_process",
                task_id=handle.task_id,
                process_ref=handle.process_ref,
                mode=handle.mode.value,
            )

        result.orphaned_marked_failed = marked_failed
        result.untracked_processes = len(result.untracked_task_ids)
        logger.info(
            "reconcile_completed",
            orphaned=result.orphaned_marked_failed,
            untracked=result.untracked_processes,
        )
        return result

    # -----------------------------------------------------------------
    # Monitor cycle
    # -----------------------------------------------------------------

    async def run_cycle(self) -> MonitorCycleResult:
        """Check every live task once. Per-task errors never abort the cycle."""
        live_tasks = await self._store.list_live()
        result = MonitorCycleResult(tasks_checked=len(live_tasks))

        for task in live_tasks:
            try:
                await self._check_task(task, result)
            except Exception as e:
                result.error_task_ids.append(task.id)
                logger.error(
                    "monitor_task_error",
                    task_id=task.id,
                    error=str(e),
                )

        if self._insights is not None:
            try:
                await self._insights.prune_expired()
            except Exception as e:
                logger.debug("insight_prune_failed", error=str(e))

        if self._metrics is not None:
            active = result.tasks_checked - result.dead_agents_detected
            self._metrics.set_active_agents(active - result.timeouts_marked_failed)
        return result

    async def _check_task(self, task: TaskRecord, result: MonitorCycleResult) -> None:
        handle = build_handle(task)
        if handle is None:
            return

        # Liveness
        alive = await self._lifecycle.is_alive(handle)
        if not alive and task.status in _PROCESS_REQUIRED:
            result.dead_agents_detected += 1
            now = datetime.now(UTC)
            try:
                await self._fail_task(
                    task,
                    {
                        "reason": "agent_died",
                        "message": f"Agent process for task {task.id} is no longer running",
                        "detectedAt": now.isoformat(),
                    },
                    now,
                )
            except Exception as e:
                logger.error("monitor_dead_agent_transition_failed", task_id=task.id, error=str(e))
                result.error_task_ids.append(task.id)
                return
            logger.warning("monitor_dead_agent", task_id=task.id, status=task.status.value)
            await self._record_outcome(task, TaskStatus.FAILED)
            return

        # PR detection
        if task.status == TaskStatus.RUNNING and task.pr_number is None:
            pr = await self._github.get_pr_for_branch(task.branch)
            if pr is not None:
                result.prs_detected += 1
                try:
                    await self._store.transition(
                        task.id,
                        task.version,
                        TaskStatus.PR_CREATED,
                        TransitionPatch(pr_number=pr.number),
                    )
                except Exception as e:
                    logger.error("monitor_pr_transition_failed", task_id=task.id, error=str(e))
                    result.error_task_ids.append(task.id)
                    return
                logger.info("monitor_pr_detected", task_id=task.id, pr_number=pr.number)
                return

        # CI status refresh, only when it changed
        if task.pr_number is not None:
            ci = await self._github.get_ci_status(task.branch)
            if ci is not None and ci.effective != task.ci_status:
                result.ci_updates += 1
                try:
                    fresh = await self._store.get(task.id)
                    if fresh is not None:
                        task = await self._store.transition(
                            fresh.id,
                            fresh.version,
                            fresh.status,
                            TransitionPatch(ci_status=ci.effective),
                        )
                except Exception as e:
                    logger.warning("monitor_ci_update_failed", task_id=task.id, error=str(e))

        now = datetime.now(UTC)

        # Stall detection (log only)
        if task.status == TaskStatus.RUNNING:
            last_commit = await self._github.get_last_commit_timestamp(task.branch)
            if last_commit:
                try:
                    commit_age = _elapsed_since(datetime.fromisoformat(last_commit), now)
                except ValueError:
                    commit_age = None
                if commit_age is not None and commit_age > self.config.stall_threshold_sec:
                    result.stalls_detected += 1
                    logger.warning(
                        "monitor_stall_detected",
                        task_id=task.id,
                        last_commit_age_sec=round(commit_age),
                        threshold_sec=self.config.stall_threshold_sec,
                    )

        # Timeout
        if task.spawned_at is not None:
            age_minutes = _elapsed_since(task.spawned_at, now) / 60
            if age_minutes > self.config.timeout_minutes:
                result.timeouts_triggered += 1
                if task.status in _PROCESS_REQUIRED:
                    try:
                        await self._fail_task(
                            task,
                            {
                                "reason": "timeout",
                                "message": (
                                    f"Task {task.id} exceeded timeout of "
                                    f"{self.config.timeout_minutes} minutes"
                                ),
                                "ageMinutes": round(age_minutes),
                                "detectedAt": now.isoformat(),
                            },
                            now,
                        )
                    except Exception as e:
                        logger.error("monitor_timeout_transition_failed", task_id=task.id, error=str(e))
                        result.error_task_ids.append(task.id)
                        return
                    result.timeouts_marked_failed += 1
                    logger.warning("monitor_timeout", task_id=task.id, age_minutes=round(age_minutes))
                    await self._record_outcome(task, TaskStatus.FAILED)
                    return

        # Insight harvesting
        if self._insights is not None and task.worktree_path and task.status == TaskStatus.RUNNING:
            try:
                await self._insights.harvest(task.id, task.worktree_path)
            except Exception as e:
                logger.debug("insight_harvest_failed", task_id=task.id, error=str(e))

    async def _fail_task(
        self,
        task: TaskRecord,
        failure_context: dict[str, Any],
        now: datetime,
    ) -> TaskRecord:
        """Transition to ``failed`` and enqueue AGENT_FAILED in the same transaction."""
        event = FleetEvent(
            type=FleetEventType.AGENT_FAILED,
            task_id=task.id,
            operator_id=task.operator_id,
            metadata={
                "reason": failure_context["reason"],
                "previousStatus": task.status.value,
            },
        )
        return await self._store.transition(
            task.id,
            task.version,
            TaskStatus.FAILED,
            TransitionPatch(failure_context=failure_context, completed_at=now),
            outbox=OutboxMessage(
                event_type=event.type.value,
                payload=event.to_wire(),
                dedup_key=f"{task.id}:{event.type.value}:{task.version + 1}",
            ),
        )

    async def _record_outcome(self, task: TaskRecord, status: TaskStatus) -> None:
        if self._identity is None or not task.agent_identity_id:
            return
        outcome = _OUTCOMES.get(status)
        if outcome is None:
            return
        try:
            await self._identity.record_task_outcome(task.agent_identity_id, task.id, outcome)
        except Exception as e:
            logger.warning(
                "monitor_identity_outcome_failed",
                task_id=task.id,
                agent_identity_id=task.agent_identity_id,
                outcome=outcome,
                error=str(e),
            )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> ReconcileResult:
        """Reconcile once, then start the periodic loop.

        Reconciliation failures are logged and startup continues with an
        empty result.
        """
        if self._running:
            logger.warning("monitor_already_running")
            return ReconcileResult()

        try:
            reconcile_result = await self.reconcile()
        except Exception as e:
            logger.error("reconcile_failed_degraded", error=str(e))
            reconcile_result = ReconcileResult()

        self._running = True
        self._loop_task = asyncio.create_task(self._timer_loop())
        logger.info(
            "monitor_started",
            interval_ms=self.config.interval_ms,
            orphaned=reconcile_result.orphaned_marked_failed,
            untracked=reconcile_result.untracked_processes,
        )
        return reconcile_result

    def stop(self) -> None:
        """Stop scheduling new ticks. A cycle already in flight runs to completion."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        self._running = False
        logger.info("monitor_stopped", cycle_count=self._cycle_count)

    async def _timer_loop(self) -> None:
        interval = self.config.interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            tick = asyncio.create_task(self.tick())
            self._tick_tasks.add(tick)
            tick.add_done_callback(self._tick_tasks.discard)

    async def tick(self) -> None:
        """Run one cycle unless the previous one is still in progress."""
        if self._cycle_in_progress:
            logger.warning("monitor_cycle_skipped")
            return

        self._cycle_in_progress = True
        started = time.monotonic()
        try:
            result = await self.run_cycle()
            elapsed_ms = (time.monotonic() - started) * 1000
            self._last_cycle_ms = elapsed_ms
            self._cycle_count += 1
            self._errors += len(result.error_task_ids)

            if elapsed_ms > self.config.cycle_deadline_ms:
                logger.warning(
                    "monitor_cycle_deadline_exceeded",
                    elapsed_ms=round(elapsed_ms),
                    deadline_ms=self.config.cycle_deadline_ms,
                    tasks_checked=result.tasks_checked,
                )
        except Exception as e:
            self._errors += 1
            logger.error("monitor_cycle_failed", error=str(e))
        finally:
            self._cycle_in_progress = False

    def get_health(self) -> MonitorHealth:
        return MonitorHealth(
            running=self._running,
            last_cycle_ms=self._last_cycle_ms,
            cycle_count=self._cycle_count,
            errors=self._errors,
        )
