"""Pydantic schemas for fleet task records and their inputs.

This module defines the task lifecycle (statuses and the allowed transitions
between them), the persisted task record, and the request/patch models the
orchestration core passes to the task store. All models use Pydantic v2.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(StrEnum):
    """Fleet task lifecycle status."""

    PROPOSED = "proposed"
    SPAWNING = "spawning"
    RUNNING = "running"
    PR_CREATED = "pr_created"
    REVIEWING = "reviewing"
    MERGED = "merged"
    FAILED = "failed"
    ABANDONED = "abandoned"
    CANCELLED = "cancelled"


class AgentType(StrEnum):
    """Supported agent runtimes."""

    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    GEMINI = "gemini"


class TaskType(StrEnum):
    """Task classification for routing and metrics."""

    BUG_FIX = "bug_fix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    REVIEW = "review"
    DOCS = "docs"


class ConvictionTier(StrEnum):
    """Operator trust tier used by the admission governor."""

    OBSERVER = "observer"
    PARTICIPANT = "participant"
    BUILDER = "builder"
    ARCHITECT = "architect"
    SOVEREIGN = "sovereign"


class ProcessMode(StrEnum):
    """How an agent process is hosted."""

    LOCAL = "local"
    CONTAINER = "container"


# Statuses that are expected to have a backing agent process.
LIVE_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.SPAWNING,
    TaskStatus.RUNNING,
    TaskStatus.PR_CREATED,
    TaskStatus.REVIEWING,
})

VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PROPOSED: frozenset({TaskStatus.SPAWNING, TaskStatus.CANCELLED}),
    TaskStatus.SPAWNING: frozenset({
        TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED,
    }),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.PR_CREATED, TaskStatus.FAILED, TaskStatus.CANCELLED,
    }),
    TaskStatus.PR_CREATED: frozenset({
        TaskStatus.REVIEWING, TaskStatus.FAILED, TaskStatus.CANCELLED,
    }),
    TaskStatus.REVIEWING: frozenset({
        TaskStatus.MERGED, TaskStatus.FAILED, TaskStatus.ABANDONED, TaskStatus.CANCELLED,
    }),
    TaskStatus.FAILED: frozenset({TaskStatus.ABANDONED}),
    TaskStatus.MERGED: frozenset(),
    TaskStatus.ABANDONED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Statuses with no outgoing transitions; only these records may be deleted.
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)


def is_valid_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True if ``current -> target`` is an allowed transition.

    A live status may also "transition" to itself; this is how metadata-only
    patches (e.g. a CI status refresh) go through the versioned update path.
    """
    if current == target:
        return current in LIVE_STATUSES
    return target in VALID_TRANSITIONS[current]


class TaskRecord(BaseModel):
    """A persisted fleet task, the unit of orchestration.

    ``version`` increases by exactly one on every accepted transition. A
    record is only ever mutated through the store's conditional transition.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = 0
    status: TaskStatus = TaskStatus.PROPOSED
    operator_id: str
    agent_type: AgentType
    model: str
    task_type: TaskType
    description: str
    branch: str
    worktree_path: str | None = None
    process_ref: str | None = None
    process_mode: ProcessMode | None = None
    pr_number: int | None = None
    ci_status: str | None = None
    review_status: dict[str, Any] | None = None
    retry_count: int = 0
    max_retries: int = 3
    context_hash: str | None = None
    failure_context: dict[str, Any] | None = None
    agent_identity_id: str | None = None
    spawned_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CreateTaskInput(BaseModel):
    """Input for inserting a new task in ``proposed`` status."""

    model_config = ConfigDict(frozen=True)

    operator_id: str = Field(min_length=1)
    agent_type: AgentType = AgentType.CLAUDE_CODE
    model: str
    task_type: TaskType
    description: str = Field(min_length=1)
    branch: str = Field(min_length=1)
    max_retries: int = Field(default=3, ge=0)
    context_hash: str | None = None
    agent_identity_id: str | None = None


class TransitionPatch(BaseModel):
    """Optional fields updated together with a status transition.

    Only fields that are explicitly set are written.
    """

    worktree_path: str | None = None
    process_ref: str | None = None
    process_mode: ProcessMode | None = None
    pr_number: int | None = None
    ci_status: str | None = None
    review_status: dict[str, Any] | None = None
    failure_context: dict[str, Any] | None = None
    spawned_at: datetime | None = None
    completed_at: datetime | None = None


class TaskQueryFilters(BaseModel):
    """Filters for ``TaskStore.query``."""

    operator_id: str | None = None
    status: TaskStatus | list[TaskStatus] | None = None
    agent_type: AgentType | None = None
    task_type: TaskType | None = None
    context_hash: str | None = None
    since: datetime | None = None
    limit: int = Field(default=50, ge=1, le=1000)


@dataclass
class AgentHandle:
    """Ephemeral handle to a live agent process, owned by the lifecycle manager."""

    task_id: str
    branch: str
    worktree_path: str
    process_ref: str
    mode: ProcessMode
    spawned_at: datetime


class HealthResponse(BaseModel):
    """Response for the health check endpoint."""

    status: str = Field(
        default="healthy",
        description="Service health status",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )


class FleetHealthResponse(BaseModel):
    """Response for the fleet health endpoint."""

    status: str = Field(description="'healthy' or 'degraded'")
    monitor: dict[str, Any] = Field(description="Monitor loop health")
    outbox_pending: int = Field(description="Outbox entries awaiting delivery")
    outbox_dead_letter: int = Field(description="Outbox entries that exhausted their retries")
    metrics: dict[str, Any] = Field(description="Fleet metrics snapshot")
    docker_available: bool = Field(description="Whether the Docker daemon is reachable")
