"""Collaborator interfaces consumed by the fleet orchestration core.

The saga, monitor and outbox worker depend only on these protocols. The
repository ships one implementation of each (``TaskStore``,
``DockerLifecycleManager``, ``FleetGovernor``); tests substitute fakes.
"""

from typing import Any, Protocol

from models.schemas import (
    AgentHandle,
    AgentType,
    ConvictionTier,
    CreateTaskInput,
    TaskQueryFilters,
    TaskRecord,
    TaskStatus,
    TransitionPatch,
)


class TaskStoreProtocol(Protocol):
    async def get(self, task_id: str) -> TaskRecord | None: ...

    async def query(self, filters: TaskQueryFilters | None = None) -> list[TaskRecord]: ...

    async def list_live(self) -> list[TaskRecord]: ...

    async def transition(
        self,
        task_id: str,
        expected_version: int,
        new_status: TaskStatus,
        patch: TransitionPatch | None = None,
        *,
        outbox: Any = None,
    ) -> TaskRecord: ...

    async def delete(self, task_id: str) -> None: ...


class LifecycleManager(Protocol):
    """Creates, probes and tears down agent processes."""

    async def spawn(
        self,
        task_id: str,
        branch: str,
        agent_type: AgentType,
        prompt: str,
    ) -> AgentHandle: ...

    async def is_alive(self, handle: AgentHandle) -> bool: ...

    async def kill(self, handle: AgentHandle) -> None: ...

    async def cleanup(self, handle: AgentHandle) -> None: ...

    async def list_active(self) -> list[AgentHandle]: ...


class AdmissionGovernor(Protocol):
    async def admit_and_insert(
        self,
        task: CreateTaskInput,
        tier: ConvictionTier,
    ) -> TaskRecord: ...


class IdentityRecorder(Protocol):
    """Records task outcomes against a persistent agent identity."""

    async def record_task_outcome(
        self,
        agent_identity_id: str,
        task_id: str,
        outcome: str,
    ) -> None: ...


class InsightHarvester(Protocol):
    """Harvests reusable insights from agent worktrees."""

    async def harvest(self, task_id: str, worktree_path: str) -> None: ...

    async def prune_expired(self) -> None: ...
