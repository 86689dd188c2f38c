"""Repository for leads and their event log.

Write helpers take an explicit connection so the state machine can run
them inside a single transaction.
"""

from typing import Any, Optional

import structlog

from leadpilot.repositories.utils import ensure_json, to_jsonb, truncate_error
from leadpilot.services.leads.models import Lead, LeadEvent, LeadStatus

logger = structlog.get_logger(__name__)

# Status -> timestamp column stamped when the lead enters it
MILESTONE_COLUMNS = {
    LeadStatus.INVITED: "invited_at",
    LeadStatus.ACCEPTED: "accepted_at",
    LeadStatus.MESSAGED: "messaged_at",
    LeadStatus.REPLIED: "replied_at",
    LeadStatus.WITHDRAWN: "withdrawn_at",
}


class LeadRepository:
    def __init__(self, pool):
        self._pool = pool

    async def create(
        self,
        external_url: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        account_name: Optional[str] = None,
        list_name: str = "default",
        status: LeadStatus = LeadStatus.NEW,
    ) -> Optional[Lead]:
        """Insert a lead; returns None if the external url already exists."""
        query = """
            INSERT INTO leads (external_url, first_name, last_name, account_name,
                               list_name, status)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (external_url) DO NOTHING
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                external_url,
                first_name,
                last_name,
                account_name,
                list_name,
                status.value,
            )
        return self._row_to_lead(row) if row else None

    async def get(self, lead_id: int) -> Optional[Lead]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM leads WHERE id = $1", lead_id)
        return self._row_to_lead(row) if row else None

    async def get_for_update(self, conn, lead_id: int) -> Optional[Lead]:
        """Row-locked read; call inside a transaction."""
        row = await conn.fetchrow("SELECT * FROM leads WHERE id = $1 FOR UPDATE", lead_id)
        return self._row_to_lead(row) if row else None

    async def update_status(
        self,
        conn,
        lead_id: int,
        to_status: LeadStatus,
        reason: str,
    ) -> None:
        """Set status and the matching milestone column."""
        assignments = ["status = $2", "updated_at = now()"]
        params: list[Any] = [lead_id, to_status.value]

        column = MILESTONE_COLUMNS.get(to_status)
        if column:
            assignments.append(f"{column} = COALESCE({column}, now())")
        if to_status == LeadStatus.BLOCKED:
            params.append(reason)
            assignments.append(f"blocked_reason = ${len(params)}")
        elif to_status == LeadStatus.REVIEW_REQUIRED:
            params.append(truncate_error(reason))
            assignments.append(f"last_error = ${len(params)}")

        query = f"UPDATE leads SET {', '.join(assignments)} WHERE id = $1"
        await conn.execute(query, *params)

    async def append_event(
        self,
        conn,
        lead_id: int,
        from_status: LeadStatus,
        to_status: LeadStatus,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """Append an audit row and return its id."""
        query = """
            INSERT INTO lead_events (lead_id, from_status, to_status, reason, metadata)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            RETURNING id
        """
        return await conn.fetchval(
            query, lead_id, from_status.value, to_status.value, reason, to_jsonb(metadata)
        )

    async def list_events(self, lead_id: int, limit: int = 100) -> list[LeadEvent]:
        """Event log for a lead, oldest first."""
        query = """
            SELECT * FROM lead_events
            WHERE lead_id = $1
            ORDER BY created_at, id
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, lead_id, limit)
        return [
            LeadEvent(
                id=row["id"],
                lead_id=row["lead_id"],
                from_status=LeadStatus.parse(row["from_status"]),
                to_status=LeadStatus.parse(row["to_status"]),
                reason=row["reason"],
                metadata=ensure_json(row["metadata"]) or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def count_by_status(self) -> dict[str, int]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS cnt FROM leads GROUP BY status"
            )
        counts: dict[str, int] = {}
        for row in rows:
            key = LeadStatus.parse(row["status"]).value
            counts[key] = counts.get(key, 0) + row["cnt"]
        return counts

    def _row_to_lead(self, row) -> Lead:
        return Lead(
            id=row["id"],
            external_url=row["external_url"],
            status=LeadStatus.parse(row["status"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            account_name=row["account_name"],
            list_name=row["list_name"],
            invited_at=row["invited_at"],
            accepted_at=row["accepted_at"],
            messaged_at=row["messaged_at"],
            replied_at=row["replied_at"],
            withdrawn_at=row["withdrawn_at"],
            last_error=row["last_error"],
            blocked_reason=row["blocked_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
