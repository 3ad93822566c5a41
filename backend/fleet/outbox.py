"""Transactional outbox worker for durable fleet event delivery.

Events are inserted into ``fleet_outbox`` inside the same transaction as the
state change they describe (see ``OutboxWorker.insert``), then delivered
asynchronously by a polling worker with at-least-once semantics.

Claim-then-deliver:
    ``process_batch`` first runs a short write transaction that selects up to
    ``batch_size`` eligible rows, oldest first, and stamps a lease
    (``claimed_until`` / ``claimed_by``) on them. The transaction commits
    before any delivery starts, so no lock is held across external I/O and
    concurrent workers claim disjoint batches. If a worker crashes between
    claim and delivery, the lease expires and the row is delivered again
    later. Delivery functions must therefore be idempotent.

Dead-lettering:
    A failed delivery increments ``retry_count`` and stores the error. Rows
    with ``retry_count >= max_retries`` are never selected again; there is
    no separate dead-letter table.
"""

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite
import structlog

from events.bus import ExternalBusClient, FleetEventBus
from events.types import FleetEvent
from models.database import TaskStore, format_ts, insert_outbox_entry

logger = structlog.get_logger(__name__)

OutboxDeliveryFn = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class OutboxWorkerConfig:
    """Polling and retry configuration for the outbox worker."""

    poll_interval_ms: int = 5000
    batch_size: int = 10
    max_retries: int = 5
    claim_lease_seconds: int = 60


@dataclass(frozen=True)
class OutboxEntry:
    """A single row of the ``fleet_outbox`` table."""

    id: str
    event_type: str
    payload: dict[str, Any]
    created_at: str
    processed_at: str | None
    retry_count: int
    dedup_key: str | None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "OutboxEntry":
        return cls(
            id=str(row["id"]),
            event_type=str(row["event_type"]),
            payload=json.loads(row["payload"]),
            created_at=str(row["created_at"]),
            processed_at=row["processed_at"],
            retry_count=int(row["retry_count"]),
            dedup_key=row["dedup_key"],
        )


class OutboxWorker:
    """Polls ``fleet_outbox`` and delivers entries via a pluggable function.

    Usage:
        >>> worker = OutboxWorker(store, bus_delivery(bus))
        >>> worker.start()
        >>> ...
        >>> await worker.stop()
    """

    def __init__(
        self,
        store: TaskStore,
        delivery_fn: OutboxDeliveryFn,
        config: OutboxWorkerConfig | None = None,
    ) -> None:
        self._store = store
        self._deliver = delivery_fn
        self.config = config or OutboxWorkerConfig()
        self.worker_id = f"outbox-{uuid.uuid4().hex[:8]}"
        self._task: asyncio.Task[None] | None = None
        self._stop_requested = asyncio.Event()

    @staticmethod
    async def insert(
        db: aiosqlite.Connection,
        event_type: str,
        payload: dict[str, Any],
        dedup_key: str | None = None,
    ) -> str:
        """Enqueue an event inside the caller's open transaction.

        Args:
            db: Connection with an open transaction (``TaskStore.transaction``).
            event_type: Event type identifier, e.g. ``"AGENT_FAILED"``.
            payload: JSON-serializable payload.
            dedup_key: Optional key; a second insert with the same key is a
                no-op that returns the first entry's id.

        Returns:
            The id of the (new or pre-existing) outbox entry.
        """
        return await insert_outbox_entry(db, event_type, payload, dedup_key)

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        """Start the polling loop. Calling start() twice is safe."""
        if self._task is not None:
            return
        self._stop_requested = asyncio.Event()
        self._task = asyncio.create_task(self._poll_loop(self._stop_requested))
        logger.info(
            "outbox_worker_started",
            worker_id=self.worker_id,
            poll_interval_ms=self.config.poll_interval_ms,
        )

    async def stop(self) -> None:
        """Stop scheduling batches and wait for the one in flight, if any.

        Calling stop() twice is safe.
        """
        task, self._task = self._task, None
        if task is None:
            return
        self._stop_requested.set()
        await task
        logger.info("outbox_worker_stopped", worker_id=self.worker_id)

    async def _poll_loop(self, stop_requested: asyncio.Event) -> None:
        interval = self.config.poll_interval_ms / 1000
        while True:
            try:
                await asyncio.wait_for(stop_requested.wait(), timeout=interval)
            except TimeoutError:
                pass
            else:
                return
            try:
                await self.process_batch()
            except Exception as e:
                logger.error(
                    "outbox_batch_error",
                    worker_id=self.worker_id,
                    error=str(e),
                )

    # -----------------------------------------------------------------
    # Batch processing
    # -----------------------------------------------------------------

    async def process_batch(self) -> int:
        """Claim and deliver one batch of outbox entries.

        Returns:
            Number of entries successfully delivered in this batch.
        """
        entries = await self._claim_batch()
        delivered = 0

        for entry in entries:
            try:
                await self._deliver(entry.event_type, entry.payload)
            except Exception as e:
                await self._mark_failed(entry, str(e))
                logger.warning(
                    "outbox_delivery_failed",
                    entry_id=entry.id,
                    event_type=entry.event_type,
                    retry_count=entry.retry_count + 1,
                    error=str(e),
                )
                continue

            await self._mark_processed(entry)
            delivered += 1
            logger.info(
                "outbox_entry_delivered",
                entry_id=entry.id,
                event_type=entry.event_type,
            )

        return delivered

    async def _claim_batch(self) -> list[OutboxEntry]:
        now = datetime.now(UTC)
        lease_until = format_ts(now + timedelta(seconds=self.config.claim_lease_seconds))

        async with self._store.transaction() as db:
            cursor = await db.execute(
                """
                SELECT * FROM fleet_outbox
                WHERE processed_at IS NULL
                  AND retry_count < ?
                  AND (claimed_until IS NULL OR claimed_until < ?)
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (self.config.max_retries, format_ts(now), self.config.batch_size),
            )
            rows = await cursor.fetchall()
            entries = [OutboxEntry.from_row(row) for row in rows]
            if entries:
                placeholders = ", ".join("?" for _ in entries)
                await db.execute(
                    f"""
                    UPDATE fleet_outbox SET claimed_until = ?, claimed_by = ?
                    WHERE id IN ({placeholders})
                    """,
                    (lease_until, self.worker_id, *(e.id for e in entries)),
                )
        return entries

    async def _mark_processed(self, entry: OutboxEntry) -> None:
        async with self._store.connect() as db:
            await db.execute(
                """
                UPDATE fleet_outbox
                SET processed_at = ?, claimed_until = NULL, claimed_by = NULL
                WHERE id = ?
                """,
                (format_ts(), entry.id),
            )

    async def _mark_failed(self, entry: OutboxEntry, error: str) -> None:
        async with self._store.connect() as db:
            await db.execute(
                """
                UPDATE fleet_outbox
                SET retry_count = retry_count + 1, error = ?,
                    claimed_until = NULL, claimed_by = NULL
                WHERE id = ?
                """,
                (error, entry.id),
            )

    # -----------------------------------------------------------------
    # Diagnostics
    # -----------------------------------------------------------------

    async def pending_count(self) -> int:
        """Entries still eligible for delivery."""
        return await self._count(
            "processed_at IS NULL AND retry_count < ?", (self.config.max_retries,)
        )

    async def dead_letter_count(self) -> int:
        """Entries excluded from delivery after exhausting their retries."""
        return await self._count(
            "processed_at IS NULL AND retry_count >= ?", (self.config.max_retries,)
        )

    async def get_entry(self, entry_id: str) -> OutboxEntry | None:
        async with self._store.connect() as db:
            cursor = await db.execute("SELECT * FROM fleet_outbox WHERE id = ?", (entry_id,))
            row = await cursor.fetchone()
        return OutboxEntry.from_row(row) if row else None

    async def _count(self, where: str, params: tuple[Any, ...]) -> int:
        async with self._store.connect() as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM fleet_outbox WHERE {where}", params)
            row = await cursor.fetchone()
        return int(row[0]) if row else 0


# -----------------------------------------------------------------
# Delivery functions
# -----------------------------------------------------------------


def bus_delivery(bus: FleetEventBus) -> OutboxDeliveryFn:
    """Deliver outbox entries by re-emitting them on the in-process bus.

    The payload must be a serialized FleetEvent (``FleetEvent.to_wire()``).
    The bus itself forwards to the external bus when one is connected.
    """

    async def deliver(event_type: str, payload: dict[str, Any]) -> None:
        event = FleetEvent.model_validate({**payload, "type": event_type})
        await bus.emit(event)

    return deliver


def external_bus_delivery(
    client: ExternalBusClient,
    subject_prefix: str = "dixie.fleet",
) -> OutboxDeliveryFn:
    """Deliver outbox entries straight to an external message bus.

    Raises while the client is disconnected so the entry stays queued and
    is retried on a later batch.
    """

    async def deliver(event_type: str, payload: dict[str, Any]) -> None:
        if not client.connected:
            raise ConnectionError("External bus client is not connected")
        await client.publish(f"{subject_prefix}.{event_type.lower()}", payload)

    return deliver
