"""Repository for persisted runtime locks (lease with TTL)."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from leadpilot.core.resilience import with_db_retry
from leadpilot.repositories.utils import ensure_json, to_jsonb

logger = structlog.get_logger(__name__)


@dataclass
class RuntimeLock:
    lock_key: str
    owner_id: str
    acquired_at: datetime
    heartbeat_at: datetime
    expires_at: datetime
    metadata: dict[str, Any]


@dataclass
class LockAcquireResult:
    """Outcome of an acquire attempt.

    ``lock`` is the row as it stands after the attempt: ours when acquired,
    the live holder's otherwise. ``stolen_from`` names an expired previous
    owner that was replaced.
    """

    acquired: bool
    lock: Optional[RuntimeLock]
    stolen_from: Optional[str] = None


class RuntimeLockRepository:
    """Lock rows keyed by ``lock_key``; at most one live owner each."""

    def __init__(self, pool):
        self._pool = pool

    async def acquire(
        self,
        lock_key: str,
        owner_id: str,
        ttl_seconds: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> LockAcquireResult:
        """Acquire, renew or steal in one conditional upsert.

        Inserts when no row exists, renews when we already own it, takes
        over when the other owner's lease has expired, and otherwise leaves
        the row untouched.
        """
        query = """
            WITH previous AS (
                SELECT owner_id, expires_at <= now() AS expired
                FROM runtime_locks WHERE lock_key = $1
            ), upserted AS (
                INSERT INTO runtime_locks (lock_key, owner_id, acquired_at,
                                           heartbeat_at, expires_at, metadata, updated_at)
                VALUES ($1, $2, now(), now(),
                        now() + make_interval(secs => $3::int), $4::jsonb, now())
                ON CONFLICT (lock_key) DO UPDATE SET
                    owner_id = EXCLUDED.owner_id,
                    acquired_at = CASE
                        WHEN runtime_locks.owner_id = EXCLUDED.owner_id
                        THEN runtime_locks.acquired_at
                        ELSE now()
                    END,
                    heartbeat_at = now(),
                    expires_at = EXCLUDED.expires_at,
                    metadata = EXCLUDED.metadata,
                    updated_at = now()
                WHERE runtime_locks.owner_id = EXCLUDED.owner_id
                   OR runtime_locks.expires_at <= now()
                RETURNING *
            )
            SELECT u.*, p.owner_id AS previous_owner
            FROM upserted u LEFT JOIN previous p ON true
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, lock_key, owner_id, ttl_seconds, to_jsonb(metadata)
            )
            if row is None:
                current = await conn.fetchrow(
                    "SELECT * FROM runtime_locks WHERE lock_key = $1", lock_key
                )
                holder = self._row_to_lock(current) if current else None
                logger.info(
                    "runtime_lock_busy",
                    lock_key=lock_key,
                    owner_id=owner_id,
                    holder=holder.owner_id if holder else None,
                )
                return LockAcquireResult(acquired=False, lock=holder)

        previous_owner = row["previous_owner"]
        stolen_from = (
            previous_owner if previous_owner and previous_owner != owner_id else None
        )
        if stolen_from:
            logger.warning(
                "runtime_lock_stolen",
                lock_key=lock_key,
                owner_id=owner_id,
                previous_owner=stolen_from,
            )
        else:
            logger.info("runtime_lock_acquired", lock_key=lock_key, owner_id=owner_id)
        return LockAcquireResult(
            acquired=True, lock=self._row_to_lock(row), stolen_from=stolen_from
        )

    async def heartbeat(self, lock_key: str, owner_id: str, ttl_seconds: int) -> bool:
        """Extend the lease. False means we no longer own the lock."""
        query = """
            UPDATE runtime_locks SET
                heartbeat_at = now(),
                expires_at = now() + make_interval(secs => $3::int),
                updated_at = now()
            WHERE lock_key = $1 AND owner_id = $2
            RETURNING lock_key
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, lock_key, owner_id, ttl_seconds)
        return row is not None

    async def release(self, lock_key: str, owner_id: str) -> bool:
        """Delete the lock if we own it. Retried on transient errors."""
        query = """
            DELETE FROM runtime_locks
            WHERE lock_key = $1 AND owner_id = $2
            RETURNING lock_key
        """
        row = await with_db_retry(
            self._pool, lambda conn: conn.fetchrow(query, lock_key, owner_id)
        )
        released = row is not None
        logger.info(
            "runtime_lock_released", lock_key=lock_key, owner_id=owner_id, released=released
        )
        return released

    async def get(self, lock_key: str) -> Optional[RuntimeLock]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM runtime_locks WHERE lock_key = $1", lock_key
            )
        return self._row_to_lock(row) if row else None

    def _row_to_lock(self, row) -> RuntimeLock:
        return RuntimeLock(
            lock_key=row["lock_key"],
            owner_id=row["owner_id"],
            acquired_at=row["acquired_at"],
            heartbeat_at=row["heartbeat_at"],
            expires_at=row["expires_at"],
            metadata=ensure_json(row["metadata"]) or {},
        )
