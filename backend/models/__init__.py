"""Models module for fleet task schemas and errors.

This module exposes the task lifecycle types shared by the store, the
orchestration core and the health API.
"""

from models.errors import (
    ActiveTaskDeletionError,
    FleetError,
    InvalidTransitionError,
    SpawnDeniedError,
    SpawnError,
    TaskNotFoundError,
    VersionConflictError,
)
from models.schemas import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    AgentHandle,
    AgentType,
    ConvictionTier,
    CreateTaskInput,
    FleetHealthResponse,
    HealthResponse,
    ProcessMode,
    TaskQueryFilters,
    TaskRecord,
    TaskStatus,
    TaskType,
    TransitionPatch,
    is_valid_transition,
)

__all__ = [
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "ActiveTaskDeletionError",
    "AgentHandle",
    "AgentType",
    "ConvictionTier",
    "CreateTaskInput",
    "FleetError",
    "FleetHealthResponse",
    "HealthResponse",
    "InvalidTransitionError",
    "ProcessMode",
    "SpawnDeniedError",
    "SpawnError",
    "TaskNotFoundError",
    "TaskQueryFilters",
    "TaskRecord",
    "TaskStatus",
    "TaskType",
    "TransitionPatch",
    "VersionConflictError",
    "is_valid_transition",
]
