"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from leadpilot.jobs.types import JobType, JobStatus


@dataclass
class Job:
    """A job in the queue."""

    id: UUID
    type: JobType
    status: JobStatus
    payload: dict[str, Any]
    idempotency_key: str
    account_id: str = "default"
    priority: int = 100

    # Retry handling; attempts counts failed executions
    attempts: int = 0
    max_attempts: int = 3
    next_run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    triaged_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class JobAttempt:
    """One execution attempt of a job. Append-only."""

    job_id: UUID
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None
