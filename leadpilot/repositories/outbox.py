"""Repository for the transactional outbox."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog

from leadpilot.repositories.utils import ensure_json, to_jsonb, truncate_error

logger = structlog.get_logger(__name__)

PERMANENT_FAILURE_PREFIX = "PERMANENT_FAILURE"


@dataclass
class OutboxEvent:
    id: UUID
    topic: str
    payload: dict[str, Any]
    idempotency_key: str
    attempts: int
    next_retry_at: datetime
    created_at: datetime
    delivered_at: Optional[datetime] = None
    permanent_failure: bool = False
    last_error: Optional[str] = None


class OutboxRepository:
    """Outbox rows; delivered_at is set exactly once."""

    def __init__(self, pool):
        self._pool = pool

    async def push(
        self,
        topic: str,
        payload: dict[str, Any],
        idempotency_key: str,
        conn=None,
    ) -> bool:
        """Insert an event unless its idempotency key already exists.

        Pass ``conn`` to enqueue inside the caller's transaction.
        Returns True if a row was inserted.
        """
        query = """
            INSERT INTO outbox_events (topic, payload, idempotency_key)
            VALUES ($1, $2::jsonb, $3)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING id
        """
        if conn is not None:
            event_id = await conn.fetchval(query, topic, to_jsonb(payload), idempotency_key)
        else:
            async with self._pool.acquire() as c:
                event_id = await c.fetchval(query, topic, to_jsonb(payload), idempotency_key)
        if event_id is None:
            logger.debug("outbox_duplicate", topic=topic, idempotency_key=idempotency_key)
            return False
        return True

    async def fetch_pending(self, limit: int = 100) -> list[OutboxEvent]:
        """Undelivered events due for (re)delivery, oldest first."""
        query = """
            SELECT * FROM outbox_events
            WHERE delivered_at IS NULL AND next_retry_at <= now()
            ORDER BY created_at, id
            LIMIT $1
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, limit)
        return [self._row_to_event(row) for row in rows]

    async def mark_delivered(self, event_id: UUID) -> None:
        query = """
            UPDATE outbox_events SET
                delivered_at = now(),
                last_error = NULL
            WHERE id = $1 AND delivered_at IS NULL
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, event_id)

    async def mark_retry(
        self, event_id: UUID, attempts: int, delay_ms: int, error: str
    ) -> None:
        query = """
            UPDATE outbox_events SET
                attempts = $2,
                next_retry_at = now() + make_interval(secs => $3::double precision / 1000),
                last_error = $4
            WHERE id = $1 AND delivered_at IS NULL
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, event_id, attempts, float(delay_ms), truncate_error(error))

    async def mark_permanent_failure(self, event_id: UUID, attempts: int, error: str) -> None:
        """Stop retrying. The row is closed with delivered_at and tagged."""
        query = """
            UPDATE outbox_events SET
                attempts = $2,
                delivered_at = now(),
                permanent_failure = true,
                last_error = $3
            WHERE id = $1 AND delivered_at IS NULL
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                event_id,
                attempts,
                truncate_error(f"{PERMANENT_FAILURE_PREFIX}: {error}"),
            )

    async def count_pending(self) -> int:
        async with self._pool.acquire() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM outbox_events WHERE delivered_at IS NULL"
            )
        return count or 0

    def _row_to_event(self, row) -> OutboxEvent:
        return OutboxEvent(
            id=row["id"],
            topic=row["topic"],
            payload=ensure_json(row["payload"]) or {},
            idempotency_key=row["idempotency_key"],
            attempts=row["attempts"],
            next_retry_at=row["next_retry_at"],
            created_at=row["created_at"],
            delivered_at=row["delivered_at"],
            permanent_failure=row["permanent_failure"],
            last_error=row["last_error"],
        )
