"""Conviction-gated spawn admission.

Each operator's conviction tier determines how many agents they may run
concurrently. Admission is a two-phase check:

1. ``can_spawn()`` is a fast in-memory pre-check against cached counts.
2. ``admit_and_insert()`` is authoritative: it counts the operator's active
   tasks and inserts the new record inside one write transaction, so two
   concurrent requests cannot both observe the same count and both be admitted.
"""

import time
from collections.abc import Mapping

import structlog

from config import DEFAULT_TIER_LIMITS as _CONFIG_TIER_LIMITS
from models.database import TaskStore
from models.errors import SpawnDeniedError
from models.schemas import ConvictionTier, CreateTaskInput, TaskRecord

logger = structlog.get_logger(__name__)

DEFAULT_TIER_LIMITS: dict[ConvictionTier, int] = {
    ConvictionTier(tier): limit for tier, limit in _CONFIG_TIER_LIMITS.items()
}


class FleetGovernor:
    """Admission governor backed by the task store.

    Attributes:
        tier_limits: Concurrent agent limit per tier.
        cache_ttl_seconds: How long a cached active count stays usable
            for ``can_spawn``.
    """

    def __init__(
        self,
        store: TaskStore,
        tier_limits: Mapping[str, int] | None = None,
        cache_ttl_seconds: float = 5.0,
    ) -> None:
        self._store = store
        self.tier_limits: dict[ConvictionTier, int] = dict(DEFAULT_TIER_LIMITS)
        for tier, limit in (tier_limits or {}).items():
            self.tier_limits[ConvictionTier(tier)] = int(limit)
        self.cache_ttl_seconds = cache_ttl_seconds
        self._active_counts: dict[str, tuple[int, float]] = {}

    def limit_for(self, tier: ConvictionTier) -> int:
        return self.tier_limits.get(ConvictionTier(tier), 0)

    def can_spawn(self, operator_id: str, tier: ConvictionTier) -> bool:
        """Best-effort pre-check that never touches the database.

        A missing or stale cache entry optimistically allows the request;
        ``admit_and_insert`` makes the binding decision.
        """
        limit = self.limit_for(tier)
        if limit <= 0:
            return False

        cached = self._active_counts.get(operator_id)
        if cached is None:
            return True
        count, cached_at = cached
        if time.monotonic() - cached_at > self.cache_ttl_seconds:
            del self._active_counts[operator_id]
            return True
        return count < limit

    def invalidate(self, operator_id: str) -> None:
        self._active_counts.pop(operator_id, None)

    async def admit_and_insert(
        self,
        task: CreateTaskInput,
        tier: ConvictionTier,
    ) -> TaskRecord:
        """Atomically check capacity and insert a new ``proposed`` task.

        Raises:
            SpawnDeniedError: If the tier may not spawn at all, or the
                operator already runs as many agents as the tier allows.
        """
        tier = ConvictionTier(tier)
        limit = self.limit_for(tier)
        if limit <= 0:
            logger.info(
                "spawn_denied",
                operator_id=task.operator_id,
                tier=tier.value,
                reason="tier_not_permitted",
            )
            raise SpawnDeniedError(
                operator_id=task.operator_id,
                tier=tier,
                active_count=0,
                tier_limit=limit,
                reason="tier_not_permitted",
                message=f"Tier '{tier}' is not permitted to spawn agents (limit=0)",
            )

        async with self._store.transaction() as db:
            active = await self._store.count_active(task.operator_id, db=db)
            self._active_counts[task.operator_id] = (active, time.monotonic())

            if active >= limit:
                logger.info(
                    "spawn_denied",
                    operator_id=task.operator_id,
                    tier=tier.value,
                    active_count=active,
                    tier_limit=limit,
                    reason="tier_limit_exceeded",
                )
                raise SpawnDeniedError(
                    operator_id=task.operator_id,
                    tier=tier,
                    active_count=active,
                    tier_limit=limit,
                    reason="tier_limit_exceeded",
                    message=(
                        f"Spawn denied for operator {task.operator_id}: "
                        f"{active}/{limit} agents active for tier '{tier}'"
                    ),
                )

            record = await self._store.insert(db, task)

        self._active_counts[task.operator_id] = (active + 1, time.monotonic())
        logger.info(
            "spawn_admitted",
            operator_id=task.operator_id,
            task_id=record.id,
            tier=tier.value,
            active_count=active + 1,
            tier_limit=limit,
        )
        return record
