"""Repository for the append-only job attempt log."""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from leadpilot.jobs.models import JobAttempt
from leadpilot.repositories.utils import truncate_error

logger = structlog.get_logger(__name__)


class JobAttemptsRepository:
    """One row per job execution, never updated."""

    def __init__(self, pool):
        self._pool = pool

    async def record_attempt(
        self,
        job_id: UUID,
        success: bool,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        query = """
            INSERT INTO job_attempts (job_id, success, error_code, error_message,
                                      started_at, finished_at)
            VALUES ($1, $2, $3, $4, COALESCE($5, now()), now())
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query, job_id, success, error_code, truncate_error(error_message), started_at
            )

    async def list_for_job(self, job_id: UUID, limit: int = 100) -> list[JobAttempt]:
        """Attempts for a job, oldest first."""
        query = """
            SELECT * FROM job_attempts
            WHERE job_id = $1
            ORDER BY id
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id, limit)
        return [self._row_to_attempt(row) for row in rows]

    def _row_to_attempt(self, row) -> JobAttempt:
        return JobAttempt(
            id=row["id"],
            job_id=row["job_id"],
            success=row["success"],
            error_code=row["error_code"],
            error_message=row["error_message"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )
