"""Persisted runtime control state: pause singleton, flags and incidents."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from leadpilot.repositories.utils import to_jsonb

logger = structlog.get_logger(__name__)

QUARANTINE_FLAG = "account_quarantine"


@dataclass(frozen=True)
class RuntimeFlags:
    """Snapshot of control state, read fresh every runner iteration."""

    paused: bool = False
    paused_until: Optional[datetime] = None
    pause_reason: Optional[str] = None
    quarantined: bool = False

    @property
    def blocked(self) -> bool:
        return self.paused or self.quarantined


class RuntimeStateRepository:
    def __init__(self, pool):
        self._pool = pool

    async def read_flags(self) -> RuntimeFlags:
        """Current flags. An expired pause is cleared as a side effect."""
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE automation_pause SET
                    paused = false,
                    paused_until = NULL,
                    reason = NULL,
                    updated_at = now()
                WHERE id = 1 AND paused
                  AND paused_until IS NOT NULL AND paused_until <= now()
                """
            )
            pause = await conn.fetchrow(
                "SELECT paused, paused_until, reason FROM automation_pause WHERE id = 1"
            )
            quarantine = await conn.fetchval(
                "SELECT value FROM runtime_flags WHERE key = $1", QUARANTINE_FLAG
            )
        return RuntimeFlags(
            paused=bool(pause and pause["paused"]),
            paused_until=pause["paused_until"] if pause else None,
            pause_reason=pause["reason"] if pause else None,
            quarantined=quarantine == "true",
        )

    async def get_flag(self, key: str) -> Optional[str]:
        async with self._pool.acquire() as conn:
            return await conn.fetchval("SELECT value FROM runtime_flags WHERE key = $1", key)

    async def set_flag(self, key: str, value: str, conn=None) -> None:
        query = """
            INSERT INTO runtime_flags (key, value, updated_at)
            VALUES ($1, $2, now())
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
        """
        if conn is not None:
            await conn.execute(query, key, value)
        else:
            async with self._pool.acquire() as c:
                await c.execute(query, key, value)
        logger.info("runtime_flag_set", key=key, value=value)

    async def set_pause(
        self, paused_until: Optional[datetime], reason: str, conn=None
    ) -> Optional[datetime]:
        """Pause automation until ``paused_until`` (None means indefinitely).

        An active pause that already ends later is kept. Returns the
        effective end of the pause.
        """
        query = """
            INSERT INTO automation_pause (id, paused, paused_until, reason, updated_at)
            VALUES (1, true, $1, $2, now())
            ON CONFLICT (id) DO UPDATE SET
                paused = true,
                paused_until = CASE
                    WHEN automation_pause.paused
                     AND EXCLUDED.paused_until IS NOT NULL
                     AND (automation_pause.paused_until IS NULL
                          OR automation_pause.paused_until > EXCLUDED.paused_until)
                    THEN automation_pause.paused_until
                    ELSE EXCLUDED.paused_until
                END,
                reason = EXCLUDED.reason,
                updated_at = now()
            RETURNING paused_until
        """
        if conn is not None:
            effective = await conn.fetchval(query, paused_until, reason)
        else:
            async with self._pool.acquire() as c:
                effective = await c.fetchval(query, paused_until, reason)
        logger.warning("automation_paused", reason=reason, paused_until=str(effective))
        return effective

    async def clear_pause(self) -> None:
        query = """
            UPDATE automation_pause SET
                paused = false,
                paused_until = NULL,
                reason = NULL,
                updated_at = now()
            WHERE id = 1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query)
        logger.info("automation_resumed")

    async def create_incident(
        self,
        incident_type: str,
        severity: str,
        details: Optional[dict[str, Any]] = None,
        conn=None,
    ) -> int:
        query = """
            INSERT INTO incidents (type, severity, details)
            VALUES ($1, $2, $3::jsonb)
            RETURNING id
        """
        if conn is not None:
            return await conn.fetchval(query, incident_type, severity, to_jsonb(details))
        async with self._pool.acquire() as c:
            return await c.fetchval(query, incident_type, severity, to_jsonb(details))

    async def count_recent_incidents(self, incident_type: str, hours: int = 24) -> int:
        query = """
            SELECT COUNT(*) FROM incidents
            WHERE type = $1 AND opened_at >= now() - make_interval(hours => $2::int)
        """
        async with self._pool.acquire() as conn:
            count = await conn.fetchval(query, incident_type, hours)
        return count or 0

    async def resolve_open_incidents(self, incident_type: Optional[str] = None) -> int:
        query = """
            UPDATE incidents SET status = 'RESOLVED', resolved_at = now()
            WHERE status = 'OPEN' AND ($1::text IS NULL OR type = $1)
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, incident_type)
        return len(rows)
