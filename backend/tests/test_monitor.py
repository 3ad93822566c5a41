"""Tests for fleet/monitor.py -- reconciliation and the periodic health cycle.

The store is a real temporary SQLite database; the lifecycle manager is the
in-memory fake and the GitHub CLI is an AsyncMock, so no subprocess or
container is ever started.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeLifecycleManager, create_task_in, make_task_input, process_patch
from fleet.monitor import (
    FleetMonitor,
    MonitorConfig,
    MonitorCycleResult,
    ReconcileResult,
    build_handle,
)
from metrics import FleetMetricsCollector
from models.database import TaskStore
from models.schemas import TaskRecord, TaskStatus, TransitionPatch
from scm.github_cli import CiStatusInfo, GitHubCli, PrInfo

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def github() -> MagicMock:
    """A GitHubCli double that reports nothing by default."""
    gh = MagicMock(spec=GitHubCli)
    gh.get_pr_for_branch = AsyncMock(return_value=None)
    gh.get_ci_status = AsyncMock(return_value=None)
    gh.get_last_commit_timestamp = AsyncMock(return_value=None)
    return gh


@pytest.fixture()
def monitor(
    store: TaskStore,
    lifecycle: FakeLifecycleManager,
    github: MagicMock,
) -> FleetMonitor:
    return FleetMonitor(store, lifecycle, MonitorConfig(interval_ms=50), github=github)


async def _running_task(
    store: TaskStore,
    lifecycle: FakeLifecycleManager,
    *,
    alive: bool = True,
    spawned_at: datetime | None = None,
    **overrides: object,
) -> TaskRecord:
    record = await store.create(make_task_input(**overrides))
    record = await store.transition(record.id, record.version, TaskStatus.SPAWNING)
    record = await store.transition(
        record.id,
        record.version,
        TaskStatus.RUNNING,
        process_patch(record.id, spawned_at),
    )
    if alive:
        lifecycle.add_process(record.id, record.branch)
    return record


async def _outbox_rows(store: TaskStore) -> list[dict]:
    async with store.connect() as db:
        cursor = await db.execute("SELECT * FROM fleet_outbox ORDER BY created_at")
        rows = await cursor.fetchall()
    return [dict(row) for row in rows]


# =========================================================================
# build_handle
# =========================================================================


class TestBuildHandle:
    async def test_none_without_process_ref(self, store: TaskStore) -> None:
        record = await create_task_in(store, TaskStatus.SPAWNING)
        assert build_handle(record) is None

    async def test_rebuilds_from_record(self, store: TaskStore) -> None:
        record = await create_task_in(store, TaskStatus.SPAWNING)
        record = await store.transition(
            record.id, record.version, TaskStatus.RUNNING, process_patch(record.id)
        )
        handle = build_handle(record)
        assert handle is not None
        assert handle.task_id == record.id
        assert handle.process_ref == f"fleet-{record.id}"
        assert handle.branch == record.branch


# =========================================================================
# Reconciliation
# =========================================================================


class TestReconcile:
    async def test_orphaned_spawning_and_running_marked_failed(
        self, monitor: FleetMonitor, store: TaskStore, lifecycle: FakeLifecycleManager
    ) -> None:
        spawning = await create_task_in(store, TaskStatus.SPAWNING)
        running = await _running_task(store, lifecycle, alive=False)

        result = await monitor.reconcile()

        assert result.orphaned_marked_failed == 2
        assert set(result.orphaned_task_ids) == {spawning.id, running.id}
        for task_id in (spawning.id, running.id):
            record = await store.get(task_id)
            assert record is not None
            assert record.status == TaskStatus.FAILED
            assert record.failure_context["reason"] == "orphaned_on_reconcile"
            assert record.completed_at is not None

    async def test_orphan_failure_enqueues_event(
        self, monitor: FleetMonitor, store: TaskStore
    ) -> None:
        spawning = await create_task_in(store, TaskStatus.SPAWNING)

        await monitor.reconcile()

        rows = await _outbox_rows(store)
        assert len(rows) == 1
        assert rows[0]["event_type"] == "AGENT_FAILED"
        assert rows[0]["dedup_key"] == f"{spawning.id}:AGENT_FAILED:{spawning.version + 1}"
        payload = json.loads(rows[0]["payload"])
        assert payload["taskId"] == spawning.id
        assert payload["metadata"] == {
            "reason": "orphaned_on_reconcile",
            "previousStatus": "spawning",
        }

    async def test_orphaned_pr_created_only_logged(
        self, monitor: FleetMonitor, store: TaskStore
    ) -> None:
        pr_task = await create_task_in(store, TaskStatus.PR_CREATED, TransitionPatch(pr_number=3))

        result = await monitor.reconcile()

        assert result.orphaned_marked_failed == 0
        assert result.orphaned_task_ids == [pr_task.id]
        record = await store.get(pr_task.id)
        assert record is not None
        assert record.status == TaskStatus.PR_CREATED
        assert record.version == pr_task.version

    async def test_tracked_running_task_untouched(
        self, monitor: FleetMonitor, store: TaskStore, lifecycle: FakeLifecycleManager
    ) -> None:
        running = await _running_task(store, lifecycle)

        result = await monitor.reconcile()

        assert result == ReconcileResult()
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.RUNNING

    async def test_untracked_process_reported_not_killed(
        self, monitor: FleetMonitor, lifecycle: FakeLifecycleManager
    ) -> None:
        lifecycle.add_process("ghost-task")

        result = await monitor.reconcile()

        assert result.untracked_processes == 1
        assert result.untracked_task_ids == ["ghost-task"]
        assert all(call[0] != "kill" for call in lifecycle.calls)
        assert "ghost-task" in lifecycle.alive

    async def test_concurrent_update_not_counted(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        spawning = await create_task_in(store, TaskStatus.SPAWNING)
        stale_store = MagicMock(wraps=store)
        stale_store.list_live = AsyncMock(return_value=[spawning])
        stale_store.transition = AsyncMock(side_effect=store.transition)
        # Someone else moves the task first
        await store.transition(spawning.id, spawning.version, TaskStatus.CANCELLED)

        monitor = FleetMonitor(stale_store, lifecycle, github=github)
        result = await monitor.reconcile()

        assert result.orphaned_task_ids == [spawning.id]
        assert result.orphaned_marked_failed == 0


# =========================================================================
# Monitor cycle
# =========================================================================


class TestRunCycle:
    async def test_dead_agent_marked_failed(
        self, monitor: FleetMonitor, store: TaskStore, lifecycle: FakeLifecycleManager
    ) -> None:
        running = await _running_task(store, lifecycle)
        lifecycle.alive.discard(running.id)

        result = await monitor.run_cycle()

        assert result.tasks_checked == 1
        assert result.dead_agents_detected == 1
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.FAILED
        assert record.failure_context["reason"] == "agent_died"
        rows = await _outbox_rows(store)
        assert [r["event_type"] for r in rows] == ["AGENT_FAILED"]

    async def test_healthy_agent_left_running(
        self, monitor: FleetMonitor, store: TaskStore, lifecycle: FakeLifecycleManager
    ) -> None:
        running = await _running_task(store, lifecycle)

        result = await monitor.run_cycle()

        assert result.dead_agents_detected == 0
        record = await store.get(running.id)
        assert record is not None
        assert record.version == running.version

    async def test_task_without_process_ref_skipped(
        self, monitor: FleetMonitor, store: TaskStore, lifecycle: FakeLifecycleManager
    ) -> None:
        spawning = await create_task_in(store, TaskStatus.SPAWNING)

        result = await monitor.run_cycle()

        assert result.tasks_checked == 1
        assert result.dead_agents_detected == 0
        assert all(tid != spawning.id for _, tid in lifecycle.calls)

    async def test_timeout_marks_failed_with_age(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        monitor = FleetMonitor(store, lifecycle, MonitorConfig(timeout_minutes=30), github=github)
        spawned_at = datetime.now(UTC) - timedelta(minutes=45)
        running = await _running_task(store, lifecycle, spawned_at=spawned_at)

        result = await monitor.run_cycle()

        assert result.timeouts_triggered == 1
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.FAILED
        assert record.failure_context["reason"] == "timeout"
        assert record.failure_context["ageMinutes"] == 45

    async def test_pr_detected(
        self,
        monitor: FleetMonitor,
        store: TaskStore,
        lifecycle: FakeLifecycleManager,
        github: MagicMock,
    ) -> None:
        running = await _running_task(store, lifecycle)
        github.get_pr_for_branch.return_value = PrInfo(
            number=17, state="OPEN", url="https://github.com/acme/app/pull/17"
        )

        result = await monitor.run_cycle()

        assert result.prs_detected == 1
        github.get_pr_for_branch.assert_awaited_once_with("fleet/fix-login")
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.PR_CREATED
        assert record.pr_number == 17

    async def test_ci_status_updated_only_when_changed(
        self,
        monitor: FleetMonitor,
        store: TaskStore,
        lifecycle: FakeLifecycleManager,
        github: MagicMock,
    ) -> None:
        running = await _running_task(store, lifecycle)
        pr_task = await store.transition(
            running.id, running.version, TaskStatus.PR_CREATED, TransitionPatch(pr_number=17)
        )
        github.get_ci_status.return_value = CiStatusInfo(status="completed", conclusion="success")

        first = await monitor.run_cycle()
        second = await monitor.run_cycle()

        assert first.ci_updates == 1
        assert second.ci_updates == 0
        record = await store.get(pr_task.id)
        assert record is not None
        assert record.status == TaskStatus.PR_CREATED
        assert record.ci_status == "success"
        assert record.version == pr_task.version + 1

    async def test_stall_is_log_only(
        self,
        monitor: FleetMonitor,
        store: TaskStore,
        lifecycle: FakeLifecycleManager,
        github: MagicMock,
    ) -> None:
        running = await _running_task(store, lifecycle)
        github.get_last_commit_timestamp.return_value = (
            datetime.now(UTC) - timedelta(hours=2)
        ).isoformat()

        result = await monitor.run_cycle()

        assert result.stalls_detected == 1
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.RUNNING
        assert record.version == running.version

    async def test_per_task_error_does_not_abort_cycle(
        self,
        monitor: FleetMonitor,
        store: TaskStore,
        lifecycle: FakeLifecycleManager,
        github: MagicMock,
    ) -> None:
        first = await _running_task(store, lifecycle)
        second = await _running_task(store, lifecycle, branch="fleet/other")
        lifecycle.alive.discard(second.id)
        github.get_pr_for_branch.side_effect = [RuntimeError("unexpected"), None]

        result = await monitor.run_cycle()

        assert result.error_task_ids == [first.id]
        assert result.dead_agents_detected == 1
        record = await store.get(second.id)
        assert record is not None
        assert record.status == TaskStatus.FAILED

    async def test_active_agents_gauge(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        metrics = FleetMetricsCollector()
        monitor = FleetMonitor(store, lifecycle, github=github, metrics=metrics)
        await _running_task(store, lifecycle)
        dead = await _running_task(store, lifecycle)
        lifecycle.alive.discard(dead.id)

        await monitor.run_cycle()

        assert metrics.snapshot().active_agents == 1

    async def test_active_agents_gauge_keeps_timed_out_pr_task(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        metrics = FleetMetricsCollector()
        monitor = FleetMonitor(
            store, lifecycle, MonitorConfig(timeout_minutes=30), github=github, metrics=metrics
        )
        running = await _running_task(
            store, lifecycle, spawned_at=datetime.now(UTC) - timedelta(minutes=45)
        )
        await store.transition(
            running.id, running.version, TaskStatus.PR_CREATED, TransitionPatch(pr_number=9)
        )

        result = await monitor.run_cycle()

        assert result.timeouts_triggered == 1
        assert result.timeouts_marked_failed == 0
        assert metrics.snapshot().active_agents == 1

    async def test_ci_update_then_timeout_in_same_pass(
        self,
        store: TaskStore,
        lifecycle: FakeLifecycleManager,
        github: MagicMock,
    ) -> None:
        monitor = FleetMonitor(store, lifecycle, MonitorConfig(timeout_minutes=30), github=github)
        running = await _running_task(
            store, lifecycle, spawned_at=datetime.now(UTC) - timedelta(minutes=45)
        )
        running = await store.transition(
            running.id, running.version, TaskStatus.RUNNING, TransitionPatch(pr_number=5)
        )
        github.get_ci_status.return_value = CiStatusInfo(status="completed", conclusion="failure")

        result = await monitor.run_cycle()

        assert result.ci_updates == 1
        assert result.timeouts_marked_failed == 1
        assert result.error_task_ids == []
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.FAILED
        assert record.ci_status == "failure"
        assert record.version == running.version + 2


# =========================================================================
# Optional collaborators
# =========================================================================


class TestOptionalServices:
    async def test_identity_outcome_recorded_on_death(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        identity = MagicMock()
        identity.record_task_outcome = AsyncMock()
        monitor = FleetMonitor(store, lifecycle, github=github, identity_service=identity)
        running = await _running_task(store, lifecycle, agent_identity_id="ident_1")
        lifecycle.alive.discard(running.id)

        await monitor.run_cycle()

        identity.record_task_outcome.assert_awaited_once_with("ident_1", running.id, "failed")

    async def test_identity_failure_does_not_break_cycle(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        identity = MagicMock()
        identity.record_task_outcome = AsyncMock(side_effect=RuntimeError("identity down"))
        monitor = FleetMonitor(store, lifecycle, github=github, identity_service=identity)
        running = await _running_task(store, lifecycle, agent_identity_id="ident_1")
        lifecycle.alive.discard(running.id)

        result = await monitor.run_cycle()

        assert result.error_task_ids == []
        record = await store.get(running.id)
        assert record is not None
        assert record.status == TaskStatus.FAILED

    async def test_insight_errors_swallowed(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        insights = MagicMock()
        insights.harvest = AsyncMock(side_effect=RuntimeError("harvest failed"))
        insights.prune_expired = AsyncMock(side_effect=RuntimeError("prune failed"))
        monitor = FleetMonitor(store, lifecycle, github=github, insight_service=insights)
        running = await _running_task(store, lifecycle)

        result = await monitor.run_cycle()

        assert result.error_task_ids == []
        insights.harvest.assert_awaited_once_with(running.id, running.worktree_path)
        insights.prune_expired.assert_awaited_once()


# =========================================================================
# Lifecycle and coalescing
# =========================================================================


class TestMonitorLifecycle:
    async def test_start_reconciles_and_runs(
        self, monitor: FleetMonitor, store: TaskStore
    ) -> None:
        await create_task_in(store, TaskStatus.SPAWNING)
        try:
            result = await monitor.start()
            assert result.orphaned_marked_failed == 1
            assert monitor.get_health().running
        finally:
            monitor.stop()
        assert not monitor.get_health().running

    async def test_second_start_is_noop(self, monitor: FleetMonitor, store: TaskStore) -> None:
        try:
            await monitor.start()
            await create_task_in(store, TaskStatus.SPAWNING)
            second = await monitor.start()
            assert second == ReconcileResult()
        finally:
            monitor.stop()

    async def test_reconcile_failure_degrades(
        self, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        broken_store = MagicMock()
        broken_store.list_live = AsyncMock(side_effect=RuntimeError("db gone"))
        monitor = FleetMonitor(
            broken_store, lifecycle, MonitorConfig(interval_ms=60_000), github=github
        )
        try:
            result = await monitor.start()
            assert result == ReconcileResult()
            assert monitor.get_health().running
        finally:
            monitor.stop()

    async def test_timer_runs_cycles(self, monitor: FleetMonitor) -> None:
        try:
            await monitor.start()
            await asyncio.sleep(0.2)
        finally:
            monitor.stop()
        assert monitor.get_health().cycle_count >= 1

    async def test_overlapping_tick_skipped(
        self, monitor: FleetMonitor, store: TaskStore, lifecycle: FakeLifecycleManager
    ) -> None:
        release = asyncio.Event()
        original = monitor.run_cycle

        async def slow_cycle():
            await release.wait()
            return await original()

        monitor.run_cycle = slow_cycle  # type: ignore[method-assign]

        first = asyncio.create_task(monitor.tick())
        await asyncio.sleep(0)
        await monitor.tick()
        assert monitor.get_health().cycle_count == 0

        release.set()
        await first
        assert monitor.get_health().cycle_count == 1

    async def test_slow_cycle_warns_but_completes(
        self, store: TaskStore, lifecycle: FakeLifecycleManager, github: MagicMock
    ) -> None:
        monitor = FleetMonitor(store, lifecycle, MonitorConfig(cycle_deadline_ms=1), github=github)
        original = monitor.run_cycle
        finished: list[MonitorCycleResult] = []

        async def slow_cycle() -> MonitorCycleResult:
            await asyncio.sleep(0.05)
            result = await original()
            finished.append(result)
            return result

        monitor.run_cycle = slow_cycle  # type: ignore[method-assign]

        with patch("fleet.monitor.logger") as mock_logger:
            await monitor.tick()

        assert len(finished) == 1
        health = monitor.get_health()
        assert health.cycle_count == 1
        assert health.last_cycle_ms >= 50
        assert health.errors == 0
        warnings = [c for c in mock_logger.warning.call_args_list if c.args]
        assert [c.args[0] for c in warnings] == ["monitor_cycle_deadline_exceeded"]
        assert warnings[0].kwargs["deadline_ms"] == 1
        assert warnings[0].kwargs["elapsed_ms"] >= 50

    async def test_tick_counts_errors(
        self,
        monitor: FleetMonitor,
        store: TaskStore,
        lifecycle: FakeLifecycleManager,
        github: MagicMock,
    ) -> None:
        await _running_task(store, lifecycle)
        github.get_pr_for_branch.side_effect = RuntimeError("unexpected")

        await monitor.tick()

        health = monitor.get_health()
        assert health.cycle_count == 1
        assert health.errors == 1
        assert health.to_dict()["cycleCount"] == 1
