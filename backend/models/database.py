"""SQLite-based fleet task store using aiosqlite.

This module provides the TaskStore class that persists fleet task records,
their notifications and the transactional outbox in a single SQLite
database. Every mutation of a task goes through ``transition``, a
compare-and-swap keyed on ``(id, expected_version)``.

Tables:
    fleet_tasks: Task records with a CHECK-constrained state machine.
    fleet_notifications: Per-task notification deliveries (fixed channel enum).
    fleet_outbox: Durable events queued alongside state changes.

Usage:
    >>> from models.database import TaskStore
    >>> store = TaskStore("./data/fleet.db")
    >>> await store.init()
    >>> record = await store.create(CreateTaskInput(...))
    >>> record = await store.transition(record.id, record.version, TaskStatus.SPAWNING)
"""

import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.errors import (
    ActiveTaskDeletionError,
    InvalidTransitionError,
    TaskNotFoundError,
    VersionConflictError,
)
from models.schemas import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    AgentType,
    CreateTaskInput,
    ProcessMode,
    TaskQueryFilters,
    TaskRecord,
    TaskStatus,
    TaskType,
    TransitionPatch,
    is_valid_transition,
)

logger = structlog.get_logger(__name__)

NOTIFICATION_CHANNELS = ("discord", "telegram", "cli")

_JSON_COLUMNS = ("review_status", "failure_context")

# Failed tasks still hold a record but no longer count against admission.
_INACTIVE_STATUSES = TERMINAL_STATUSES | {TaskStatus.FAILED}


def _sql_list(values: Any) -> str:
    return ", ".join(f"'{v.value if isinstance(v, Enum) else v}'" for v in values)


SCHEMA = f"""
CREATE TABLE IF NOT EXISTS fleet_tasks (
    id TEXT PRIMARY KEY,
    operator_id TEXT NOT NULL,
    agent_type TEXT NOT NULL CHECK (agent_type IN ({_sql_list(AgentType)})),
    model TEXT NOT NULL,
    task_type TEXT NOT NULL CHECK (task_type IN ({_sql_list(TaskType)})),
    description TEXT NOT NULL,
    branch TEXT NOT NULL,
    worktree_path TEXT,
    process_ref TEXT,
    process_mode TEXT CHECK (process_mode IS NULL OR process_mode IN ({_sql_list(ProcessMode)})),
    status TEXT NOT NULL DEFAULT 'proposed' CHECK (status IN ({_sql_list(TaskStatus)})),
    version INTEGER NOT NULL DEFAULT 0,
    pr_number INTEGER,
    ci_status TEXT,
    review_status TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    context_hash TEXT,
    failure_context TEXT,
    agent_identity_id TEXT,
    spawned_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (retry_count >= 0 AND retry_count <= max_retries),
    CHECK (max_retries >= 0)
);

CREATE INDEX IF NOT EXISTS idx_fleet_tasks_operator ON fleet_tasks (operator_id);
CREATE INDEX IF NOT EXISTS idx_fleet_tasks_status ON fleet_tasks (status);
CREATE INDEX IF NOT EXISTS idx_fleet_tasks_context_hash ON fleet_tasks (context_hash);
CREATE INDEX IF NOT EXISTS idx_fleet_tasks_created ON fleet_tasks (created_at DESC);

CREATE TRIGGER IF NOT EXISTS trg_fleet_tasks_updated_at
AFTER UPDATE ON fleet_tasks
FOR EACH ROW WHEN NEW.updated_at = OLD.updated_at
BEGIN
    UPDATE fleet_tasks
    SET updated_at = strftime('%Y-%m-%dT%H:%M:%f000+00:00', 'now')
    WHERE id = NEW.id;
END;

CREATE TABLE IF NOT EXISTS fleet_notifications (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES fleet_tasks(id) ON DELETE CASCADE,
    channel TEXT NOT NULL CHECK (channel IN ({_sql_list(NOTIFICATION_CHANNELS)})),
    payload TEXT NOT NULL,
    delivered INTEGER NOT NULL DEFAULT 0,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    delivered_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fleet_notifications_task ON fleet_notifications (task_id);

CREATE TABLE IF NOT EXISTS fleet_outbox (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    dedup_key TEXT UNIQUE,
    created_at TEXT NOT NULL,
    processed_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    claimed_until TEXT,
    claimed_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_fleet_outbox_unprocessed
    ON fleet_outbox (processed_at, created_at);
"""


def format_ts(value: datetime | None = None) -> str:
    """Format a timestamp as fixed-width ISO-8601 UTC text.

    Fixed width keeps lexicographic order equal to chronological order,
    which the outbox relies on for ``ORDER BY created_at`` and lease checks.
    """
    value = value or datetime.now(UTC)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


@dataclass(frozen=True)
class OutboxMessage:
    """An event to enqueue in the same transaction as a task transition."""

    event_type: str
    payload: dict[str, Any]
    dedup_key: str | None = None


async def insert_outbox_entry(
    db: aiosqlite.Connection,
    event_type: str,
    payload: dict[str, Any],
    dedup_key: str | None = None,
) -> str:
    """Insert an outbox row on an already-open transactional connection.

    With a ``dedup_key``, a conflicting insert is a no-op and the id of the
    pre-existing row is returned.
    """
    entry_id = str(uuid.uuid4())
    cursor = await db.execute(
        """
        INSERT INTO fleet_outbox (id, event_type, payload, dedup_key, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (dedup_key) DO NOTHING
        """,
        (entry_id, event_type, json.dumps(payload), dedup_key, format_ts()),
    )
    if cursor.rowcount == 0:
        cursor = await db.execute(
            "SELECT id FROM fleet_outbox WHERE dedup_key = ?",
            (dedup_key,),
        )
        row = await cursor.fetchone()
        return str(row[0])
    return entry_id


def _row_to_record(row: aiosqlite.Row) -> TaskRecord:
    data = dict(row)
    for column in _JSON_COLUMNS:
        if data.get(column):
            data[column] = json.loads(data[column])
    return TaskRecord.model_validate(data)


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return json.dumps(value)
    return value


class TaskStore:
    """Async SQLite store for fleet tasks with optimistic concurrency.

    Unlike a best-effort cache, this store propagates its errors: a stale
    version, an invalid transition or a missing record is raised to the
    caller, which decides whether to compensate, skip or report.

    Attributes:
        db_path: Path to the SQLite database file.
        busy_timeout_ms: How long a writer waits for the database lock.
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        """Initialize the task store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
            busy_timeout_ms: Lock wait applied to every connection.
        """
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        try:
            async with self.connect() as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.executescript(SCHEMA)
            logger.info("task_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "task_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    # -----------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open an autocommit connection (each statement commits on its own)."""
        async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a write transaction that commits on exit and rolls back on error.

        ``BEGIN IMMEDIATE`` takes the write lock up front, so a read-check-write
        sequence inside the block cannot interleave with another writer.
        """
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    # -----------------------------------------------------------------
    # Task CRUD
    # -----------------------------------------------------------------

    async def insert(self, db: aiosqlite.Connection, task: CreateTaskInput) -> TaskRecord:
        """Insert a new ``proposed`` task on an open transaction (version 0)."""
        task_id = str(uuid.uuid4())
        now = format_ts()
        await db.execute(
            """
            INSERT INTO fleet_tasks (
                id, operator_id, agent_type, model, task_type, description,
                branch, max_retries, context_hash, agent_identity_id,
                status, version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (
                task_id,
                task.operator_id,
                task.agent_type.value,
                task.model,
                task.task_type.value,
                task.description,
                task.branch,
                task.max_retries,
                task.context_hash,
                task.agent_identity_id,
                TaskStatus.PROPOSED.value,
                now,
                now,
            ),
        )
        record = await self._fetch(db, task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        logger.debug(
            "task_inserted",
            task_id=task_id,
            operator_id=task.operator_id,
            branch=task.branch,
        )
        return record

    async def create(self, task: CreateTaskInput) -> TaskRecord:
        """Insert a new ``proposed`` task in its own transaction."""
        async with self.transaction() as db:
            return await self.insert(db, task)

    async def get(self, task_id: str) -> TaskRecord | None:
        """Retrieve a single task by its ID, or None if not found."""
        async with self.connect() as db:
            return await self._fetch(db, task_id)

    async def query(self, filters: TaskQueryFilters | None = None) -> list[TaskRecord]:
        """Query tasks, newest first.

        Args:
            filters: Optional filters; all given filters must match.

        Returns:
            Matching task records, at most ``filters.limit`` of them.
        """
        filters = filters or TaskQueryFilters()
        conditions: list[str] = []
        params: list[Any] = []

        if filters.operator_id:
            conditions.append("operator_id = ?")
            params.append(filters.operator_id)
        if filters.status is not None:
            statuses = filters.status if isinstance(filters.status, list) else [filters.status]
            conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        if filters.agent_type:
            conditions.append("agent_type = ?")
            params.append(filters.agent_type.value)
        if filters.task_type:
            conditions.append("task_type = ?")
            params.append(filters.task_type.value)
        if filters.context_hash:
            conditions.append("context_hash = ?")
            params.append(filters.context_hash)
        if filters.since:
            conditions.append("created_at >= ?")
            params.append(format_ts(filters.since))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with self.connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM fleet_tasks {where} ORDER BY created_at DESC LIMIT ?",
                (*params, filters.limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def list_live(self) -> list[TaskRecord]:
        """List tasks in a live status, oldest first."""
        async with self.connect() as db:
            cursor = await db.execute(
                f"""
                SELECT * FROM fleet_tasks
                WHERE status IN ({_sql_list(LIVE_STATUSES)})
                ORDER BY created_at ASC
                """
            )
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def count_active(
        self,
        operator_id: str,
        db: aiosqlite.Connection | None = None,
    ) -> int:
        """Count an operator's tasks that still occupy admission capacity."""
        sql = f"""
            SELECT COUNT(*) FROM fleet_tasks
            WHERE operator_id = ? AND status NOT IN ({_sql_list(_INACTIVE_STATUSES)})
        """
        if db is not None:
            cursor = await db.execute(sql, (operator_id,))
            row = await cursor.fetchone()
        else:
            async with self.connect() as conn:
                cursor = await conn.execute(sql, (operator_id,))
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def delete(self, task_id: str) -> None:
        """Delete a task. Only allowed for terminal statuses.

        Raises:
            TaskNotFoundError: If the task does not exist.
            ActiveTaskDeletionError: If the task is not terminal.
        """
        async with self.transaction() as db:
            record = await self._fetch(db, task_id)
            if record is None:
                raise TaskNotFoundError(task_id)
            if not record.is_terminal:
                raise ActiveTaskDeletionError(task_id, record.status)
            await db.execute("DELETE FROM fleet_tasks WHERE id = ?", (task_id,))
        logger.info("task_deleted", task_id=task_id, status=record.status.value)

    # -----------------------------------------------------------------
    # State machine
    # -----------------------------------------------------------------

    async def transition(
        self,
        task_id: str,
        expected_version: int,
        new_status: TaskStatus,
        patch: TransitionPatch | None = None,
        *,
        outbox: OutboxMessage | None = None,
    ) -> TaskRecord:
        """Transition a task to a new status with optimistic concurrency.

        The update only applies if the stored version still equals
        ``expected_version``; on success the version increases by exactly one.
        When ``outbox`` is given, the event is queued in the same transaction,
        so it exists if and only if the transition commits.

        Args:
            task_id: The task to transition.
            expected_version: The version the caller last observed.
            new_status: Target status (the current live status for a
                metadata-only patch).
            patch: Optional fields to write together with the status.
            outbox: Optional event to enqueue atomically with the change.

        Returns:
            The updated record.

        Raises:
            TaskNotFoundError: If the task does not exist.
            VersionConflictError: If ``expected_version`` is stale.
            InvalidTransitionError: If the state machine forbids the move.
        """
        async with self.transaction() as db:
            current = await self._fetch(db, task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            if current.version != expected_version:
                raise VersionConflictError(task_id, expected_version)
            if not is_valid_transition(current.status, new_status):
                raise InvalidTransitionError(current.status, new_status)

            set_clauses = ["status = ?", "version = version + 1", "updated_at = ?"]
            params: list[Any] = [new_status.value, format_ts()]
            if patch is not None:
                for column, value in patch.model_dump(exclude_unset=True).items():
                    set_clauses.append(f"{column} = ?")
                    params.append(_to_column(value))

            cursor = await db.execute(
                f"UPDATE fleet_tasks SET {', '.join(set_clauses)} WHERE id = ? AND version = ?",
                (*params, task_id, expected_version),
            )
            if cursor.rowcount == 0:
                raise VersionConflictError(task_id, expected_version)

            if outbox is not None:
                await insert_outbox_entry(
                    db, outbox.event_type, outbox.payload, outbox.dedup_key
                )

            updated = await self._fetch(db, task_id)

        if updated is None:
            raise TaskNotFoundError(task_id)
        logger.debug(
            "task_transitioned",
            task_id=task_id,
            from_status=current.status.value,
            to_status=new_status.value,
            version=updated.version,
        )
        return updated

    async def record_failure(
        self,
        task_id: str,
        failure_context: dict[str, Any],
    ) -> TaskRecord | None:
        """Increment retry_count and record failure context.

        Returns:
            The updated record, or None if retry_count was already at
            max_retries (or the task does not exist).
        """
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE fleet_tasks
                SET retry_count = retry_count + 1, failure_context = ?
                WHERE id = ? AND retry_count < max_retries
                """,
                (json.dumps(failure_context), task_id),
            )
            if cursor.rowcount == 0:
                return None
            return await self._fetch(db, task_id)

    # -----------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------

    async def add_notification(
        self,
        task_id: str,
        channel: str,
        payload: dict[str, Any],
    ) -> str:
        """Queue a notification for a task on one of NOTIFICATION_CHANNELS.

        Raises:
            ValueError: If the channel is not supported.
        """
        if channel not in NOTIFICATION_CHANNELS:
            raise ValueError(f"Unsupported notification channel: {channel}")
        notification_id = str(uuid.uuid4())
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO fleet_notifications (id, task_id, channel, payload, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (notification_id, task_id, channel, json.dumps(payload), format_ts()),
            )
        return notification_id

    async def list_notifications(self, task_id: str) -> list[dict[str, Any]]:
        async with self.connect() as db:
            cursor = await db.execute(
                "SELECT * FROM fleet_notifications WHERE task_id = ? ORDER BY created_at",
                (task_id,),
            )
            rows = await cursor.fetchall()
        notifications = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item["payload"])
            notifications.append(item)
        return notifications

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    async def _fetch(self, db: aiosqlite.Connection, task_id: str) -> TaskRecord | None:
        cursor = await db.execute("SELECT * FROM fleet_tasks WHERE id = ?", (task_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)
