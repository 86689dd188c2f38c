"""Repository for job queue operations."""

import random
from typing import Any, Optional
from uuid import UUID

import structlog

from leadpilot.accounts import DEFAULT_ACCOUNT_ID
from leadpilot.jobs.models import Job
from leadpilot.jobs.types import JobType, JobStatus
from leadpilot.repositories.utils import ensure_json, to_jsonb, truncate_error

logger = structlog.get_logger(__name__)


def compute_backoff_ms(attempts: int, base_ms: int, jitter_ms: int) -> int:
    """Retry delay after the ``attempts``-th failure: base * 2^(attempts-1) + jitter."""
    exponent = max(0, attempts - 1)
    jitter = random.randint(0, jitter_ms) if jitter_ms > 0 else 0
    return base_ms * (2**exponent) + jitter


class JobRepository:
    """Repository for job queue operations."""

    def __init__(self, pool, retry_base_ms: int = 1200, retry_jitter_ms: int = 250):
        self._pool = pool
        self._retry_base_ms = retry_base_ms
        self._retry_jitter_ms = retry_jitter_ms

    def compute_backoff_ms(self, attempts: int) -> int:
        return compute_backoff_ms(attempts, self._retry_base_ms, self._retry_jitter_ms)

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        idempotency_key: str,
        account_id: str = DEFAULT_ACCOUNT_ID,
        priority: int = 100,
        max_attempts: int = 3,
        delay_seconds: float = 0,
    ) -> bool:
        """Insert a job unless one with the same idempotency key exists.

        Returns True if a row was inserted.
        """
        query = """
            INSERT INTO jobs (type, payload, idempotency_key, account_id,
                              priority, max_attempts, next_run_at)
            VALUES ($1, $2::jsonb, $3, $4, $5, $6,
                    now() + make_interval(secs => $7::double precision))
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            job_id = await conn.fetchval(
                query,
                job_type.value,
                to_jsonb(payload),
                idempotency_key,
                account_id,
                priority,
                max_attempts,
                float(delay_seconds),
            )
        if job_id is None:
            logger.debug("job_enqueue_duplicate", idempotency_key=idempotency_key)
            return False
        logger.info(
            "job_enqueued",
            job_id=str(job_id),
            job_type=job_type.value,
            account_id=account_id,
        )
        return True

    async def claim_next(
        self,
        allowed_types: Optional[list[JobType]],
        account_id: str = DEFAULT_ACCOUNT_ID,
        include_legacy_queue: bool = False,
    ) -> Optional[Job]:
        """Claim the next runnable job for an account.

        The candidate row is locked with FOR UPDATE SKIP LOCKED and the
        state change is conditional on the job still being QUEUED, so two
        concurrent claimers can never both win the same job.

        Returns None if no job is runnable or the claim was lost.
        """
        accounts = [account_id]
        if include_legacy_queue and account_id != DEFAULT_ACCOUNT_ID:
            accounts.append(DEFAULT_ACCOUNT_ID)
        # Unknown types are never claimed; dead_letter_unknown_types sweeps them
        types = [jt.value for jt in (allowed_types or list(JobType))]

        select_query = """
            SELECT id FROM jobs
            WHERE status = 'QUEUED'
              AND next_run_at <= now()
              AND account_id = ANY($1::text[])
              AND type = ANY($2::text[])
            ORDER BY priority, created_at
            FOR UPDATE SKIP LOCKED
            LIMIT 1
        """
        update_query = """
            UPDATE jobs SET
                status = 'RUNNING',
                locked_at = now(),
                updated_at = now()
            WHERE id = $1 AND status = 'QUEUED'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                job_id = await conn.fetchval(select_query, accounts, types)
                if job_id is None:
                    return None
                row = await conn.fetchrow(update_query, job_id)

        if row is None:
            logger.info("job_claim_lost", job_id=str(job_id))
            return None

        logger.info(
            "job_claimed",
            job_id=str(row["id"]),
            job_type=row["type"],
            account_id=row["account_id"],
            attempt=row["attempts"] + 1,
        )
        return self._row_to_job(row)

    async def mark_succeeded(self, job_id: UUID) -> None:
        """Mark a job as succeeded."""
        query = """
            UPDATE jobs SET
                status = 'SUCCEEDED',
                locked_at = NULL,
                last_error = NULL,
                updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, job_id)
        logger.info("job_succeeded", job_id=str(job_id))

    async def mark_retry_or_dead_letter(
        self,
        job_id: UUID,
        attempts: int,
        max_attempts: int,
        backoff_ms: int,
        error: str,
    ) -> JobStatus:
        """Record a failed execution.

        Dead-letters the job once ``attempts`` reaches ``max_attempts``;
        otherwise re-queues it ``backoff_ms`` from now.
        """
        status = JobStatus.DEAD_LETTER if attempts >= max_attempts else JobStatus.QUEUED
        query = """
            UPDATE jobs SET
                status = $2,
                attempts = $3,
                next_run_at = CASE
                    WHEN $2 = 'QUEUED'
                    THEN now() + make_interval(secs => $4::double precision / 1000)
                    ELSE next_run_at
                END,
                locked_at = NULL,
                last_error = $5,
                updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query, job_id, status.value, attempts, float(backoff_ms), truncate_error(error)
            )

        if status == JobStatus.DEAD_LETTER:
            logger.warning(
                "job_dead_lettered", job_id=str(job_id), attempts=attempts, error=error
            )
        else:
            logger.info(
                "job_retry_scheduled",
                job_id=str(job_id),
                attempts=attempts,
                backoff_ms=backoff_ms,
            )
        return status

    async def requeue(self, job_id: UUID, delay_seconds: float, error: str) -> None:
        """Put a RUNNING job back in the queue without consuming retry budget."""
        query = """
            UPDATE jobs SET
                status = 'QUEUED',
                next_run_at = now() + make_interval(secs => $2::double precision),
                locked_at = NULL,
                last_error = $3,
                updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, job_id, float(delay_seconds), truncate_error(error))
        logger.info("job_requeued", job_id=str(job_id), delay_seconds=delay_seconds)

    async def recover_stale(self, stale_minutes: int = 30) -> int:
        """Reset RUNNING jobs whose lock is older than ``stale_minutes`` to QUEUED."""
        query = """
            UPDATE jobs SET
                status = 'QUEUED',
                locked_at = NULL,
                next_run_at = now(),
                last_error = 'Recovered from stale RUNNING state',
                updated_at = now()
            WHERE status = 'RUNNING'
              AND locked_at < now() - make_interval(mins => $1::int)
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, stale_minutes)
        count = len(rows)
        if count > 0:
            logger.warning("stale_jobs_recovered", count=count, stale_minutes=stale_minutes)
        return count

    async def dead_letter_unknown_types(self) -> int:
        """Dead-letter queued jobs whose type has no JobType.

        They are marked triaged so dead-letter triage never recycles them.
        """
        query = """
            UPDATE jobs SET
                status = 'DEAD_LETTER',
                locked_at = NULL,
                last_error = 'UNKNOWN_JOB_TYPE: ' || type,
                triaged_at = now(),
                updated_at = now()
            WHERE status = 'QUEUED'
              AND NOT (type = ANY($1::text[]))
            RETURNING id, type
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, [jt.value for jt in JobType])
        for row in rows:
            logger.error(
                "job_unknown_type_dead_lettered", job_id=str(row["id"]), job_type=row["type"]
            )
        return len(rows)

    async def get(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
        return self._row_to_job(row) if row else None

    async def count_by_status(self, account_id: Optional[str] = None) -> dict[str, int]:
        """Job counts keyed by status, every status present."""
        query = """
            SELECT status, COUNT(*) AS cnt FROM jobs
            WHERE ($1::text IS NULL OR account_id = $1)
            GROUP BY status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, account_id)
        counts = {s.value: 0 for s in JobStatus}
        for row in rows:
            counts[row["status"]] = row["cnt"]
        return counts

    async def list_untriaged_dead_letters(self, limit: int = 100) -> list[Job]:
        """Dead-lettered jobs not yet seen by triage, oldest first."""
        query = """
            SELECT * FROM jobs
            WHERE status = 'DEAD_LETTER' AND triaged_at IS NULL
            ORDER BY updated_at, id
            LIMIT $1
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, limit)
        return [self._row_to_job(row) for row in rows]

    async def recycle(self, job_id: UUID, delay_seconds: float, priority: int) -> bool:
        """Move a dead-lettered job back to QUEUED with a fresh retry budget."""
        query = """
            UPDATE jobs SET
                status = 'QUEUED',
                attempts = 0,
                priority = $3,
                next_run_at = now() + make_interval(secs => $2::double precision),
                locked_at = NULL,
                triaged_at = NULL,
                updated_at = now()
            WHERE id = $1 AND status = 'DEAD_LETTER'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, float(delay_seconds), priority)
        return row is not None

    async def mark_triaged(self, job_id: UUID, error: str) -> bool:
        """Keep a job dead-lettered permanently, annotating the reason."""
        query = """
            UPDATE jobs SET
                triaged_at = now(),
                last_error = $2,
                updated_at = now()
            WHERE id = $1 AND status = 'DEAD_LETTER'
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, truncate_error(error))
        return row is not None

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            payload=ensure_json(row["payload"]) or {},
            idempotency_key=row["idempotency_key"],
            account_id=row["account_id"],
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_run_at=row["next_run_at"],
            locked_at=row["locked_at"],
            last_error=row["last_error"],
            triaged_at=row["triaged_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
