"""Shared test fixtures for backend tests.

Provides a fresh event bus, a temporary SQLite task store, and an in-memory
fake lifecycle manager so tests never touch real Docker containers or the
``gh`` CLI.
"""

import sys
from datetime import UTC, datetime
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from fleet.saga import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from events.bus import FleetEventBus, reset_event_bus  # noqa: E402
from models.database import TaskStore  # noqa: E402
from models.schemas import (  # noqa: E402
    AgentHandle,
    AgentType,
    CreateTaskInput,
    ProcessMode,
    TaskRecord,
    TaskStatus,
    TaskType,
    TransitionPatch,
)

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> FleetEventBus:
    """Return a fresh FleetEventBus instance for each test."""
    reset_event_bus()
    return FleetEventBus()


# ---------------------------------------------------------------------------
# Task Store
# ---------------------------------------------------------------------------


@pytest.fixture()
async def store(tmp_path: Any) -> TaskStore:
    """Provide an initialized TaskStore backed by a temporary SQLite file."""
    task_store = TaskStore(str(tmp_path / "fleet.db"))
    await task_store.init()
    return task_store


def make_task_input(**overrides: Any) -> CreateTaskInput:
    """Create a CreateTaskInput with sensible defaults."""
    fields: dict[str, Any] = {
        "operator_id": "op_1",
        "agent_type": AgentType.CLAUDE_CODE,
        "model": "claude-sonnet",
        "task_type": TaskType.BUG_FIX,
        "description": "Fix the login redirect loop",
        "branch": "fleet/fix-login",
    }
    fields.update(overrides)
    return CreateTaskInput(**fields)


# Transitions walked to reach each status from ``proposed``
_PATHS: dict[TaskStatus, list[TaskStatus]] = {
    TaskStatus.PROPOSED: [],
    TaskStatus.SPAWNING: [TaskStatus.SPAWNING],
    TaskStatus.RUNNING: [TaskStatus.SPAWNING, TaskStatus.RUNNING],
    TaskStatus.PR_CREATED: [TaskStatus.SPAWNING, TaskStatus.RUNNING, TaskStatus.PR_CREATED],
    TaskStatus.REVIEWING: [
        TaskStatus.SPAWNING, TaskStatus.RUNNING, TaskStatus.PR_CREATED, TaskStatus.REVIEWING,
    ],
    TaskStatus.FAILED: [TaskStatus.SPAWNING, TaskStatus.FAILED],
    TaskStatus.CANCELLED: [TaskStatus.CANCELLED],
    TaskStatus.ABANDONED: [TaskStatus.SPAWNING, TaskStatus.FAILED, TaskStatus.ABANDONED],
}


async def create_task_in(
    task_store: TaskStore,
    status: TaskStatus,
    patch: TransitionPatch | None = None,
    **overrides: Any,
) -> TaskRecord:
    """Insert a task and walk it to ``status``; ``patch`` applies on the last step."""
    record = await task_store.create(make_task_input(**overrides))
    path = _PATHS[status]
    for index, step in enumerate(path):
        step_patch = patch if index == len(path) - 1 else None
        record = await task_store.transition(record.id, record.version, step, step_patch)
    return record


def process_patch(task_id: str, spawned_at: datetime | None = None) -> TransitionPatch:
    """Patch that attaches a local process to a task."""
    return TransitionPatch(
        worktree_path=f"/tmp/worktrees/{task_id}",
        process_ref=f"fleet-{task_id}",
        process_mode=ProcessMode.LOCAL,
        spawned_at=spawned_at or datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Fake Lifecycle Manager
# ---------------------------------------------------------------------------


class FakeLifecycleManager:
    """In-memory lifecycle manager that records every call.

    Attributes:
        calls: ``(method, task_id)`` tuples in call order.
        alive: Task ids whose agent reports as running.
        spawn_error: If set, ``spawn`` raises it.
        kill_error: If set, ``kill`` raises it.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.alive: set[str] = set()
        self.handles: dict[str, AgentHandle] = {}
        self.spawn_error: Exception | None = None
        self.kill_error: Exception | None = None

    async def spawn(
        self,
        task_id: str,
        branch: str,
        agent_type: AgentType,
        prompt: str,
    ) -> AgentHandle:
        self.calls.append(("spawn", task_id))
        if self.spawn_error is not None:
            raise self.spawn_error
        handle = AgentHandle(
            task_id=task_id,
            branch=branch,
            worktree_path=f"/tmp/worktrees/{task_id}",
            process_ref=f"fleet-{task_id}",
            mode=ProcessMode.LOCAL,
            spawned_at=datetime.now(UTC),
        )
        self.handles[task_id] = handle
        self.alive.add(task_id)
        return handle

    async def is_alive(self, handle: AgentHandle) -> bool:
        self.calls.append(("is_alive", handle.task_id))
        return handle.task_id in self.alive

    async def kill(self, handle: AgentHandle) -> None:
        self.calls.append(("kill", handle.task_id))
        if self.kill_error is not None:
            raise self.kill_error
        self.alive.discard(handle.task_id)

    async def cleanup(self, handle: AgentHandle) -> None:
        self.calls.append(("cleanup", handle.task_id))
        self.handles.pop(handle.task_id, None)

    async def list_active(self) -> list[AgentHandle]:
        return [h for task_id, h in self.handles.items() if task_id in self.alive]

    def add_process(self, task_id: str, branch: str = "fleet/untracked") -> AgentHandle:
        """Register a running process without going through spawn."""
        handle = AgentHandle(
            task_id=task_id,
            branch=branch,
            worktree_path=f"/tmp/worktrees/{task_id}",
            process_ref=f"fleet-{task_id}",
            mode=ProcessMode.LOCAL,
            spawned_at=datetime.now(UTC),
        )
        self.handles[task_id] = handle
        self.alive.add(task_id)
        return handle


@pytest.fixture()
def lifecycle() -> FakeLifecycleManager:
    """Provide a fresh fake lifecycle manager for each test."""
    return FakeLifecycleManager()

