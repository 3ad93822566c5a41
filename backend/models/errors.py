"""Exception types raised by the fleet task store and its collaborators.

The orchestration core catches these at its boundaries; they never escape a
saga execution, a monitor cycle or an outbox batch.
"""

from models.schemas import ConvictionTier, TaskStatus


class FleetError(Exception):
    """Base class for fleet orchestration errors."""


class VersionConflictError(FleetError):
    """A conditional transition was presented with a stale version."""

    def __init__(self, task_id: str, expected_version: int) -> None:
        super().__init__(
            f"Stale version for task {task_id}: expected version {expected_version}"
        )
        self.task_id = task_id
        self.expected_version = expected_version


class InvalidTransitionError(FleetError):
    def __init__(self, from_status: TaskStatus, to_status: TaskStatus) -> None:
        super().__init__(f"Invalid transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class TaskNotFoundError(FleetError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ActiveTaskDeletionError(FleetError):
    """Only records in a terminal status may be deleted."""

    def __init__(self, task_id: str, status: TaskStatus) -> None:
        super().__init__(f"Cannot delete active task {task_id} (status: {status})")
        self.task_id = task_id
        self.status = status


class SpawnDeniedError(FleetError):
    """The admission governor refused a spawn request."""

    def __init__(
        self,
        operator_id: str,
        tier: ConvictionTier,
        active_count: int,
        tier_limit: int,
        reason: str,
        message: str,
    ) -> None:
        super().__init__(message)
        self.operator_id = operator_id
        self.tier = tier
        self.active_count = active_count
        self.tier_limit = tier_limit
        self.reason = reason


class SpawnError(FleetError):
    """The lifecycle manager could not create or manage an agent process.

    Attributes:
        code: Machine-readable failure class, e.g. ``"INVALID_BRANCH"``,
            ``"WORKTREE_ESCAPE"``, ``"CONTAINER_FAILED"``.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
