"""Shared fixtures for unit tests.

Repositories are mocked at the pool seam (``pool.acquire()`` yields an
AsyncMock connection) or replaced wholesale with spec'd mocks when a
service is under test.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from leadpilot.config import Settings
from leadpilot.jobs.models import Job
from leadpilot.jobs.types import JobStatus, JobType
from leadpilot.repositories.daily_stats import DailyStatsRepository
from leadpilot.repositories.job_attempts import JobAttemptsRepository
from leadpilot.repositories.jobs import JobRepository
from leadpilot.repositories.outbox import OutboxRepository
from leadpilot.repositories.runtime_state import RuntimeFlags, RuntimeStateRepository
from leadpilot.services.leads.state_machine import LeadStateService
from leadpilot.services.risk.incidents import IncidentManager, PauseOutcome


@pytest.fixture
def mock_conn():
    conn = AsyncMock()
    conn.transaction = MagicMock()
    return conn


@pytest.fixture
def mock_pool(mock_conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = mock_conn
    return pool


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        maintenance_every_jobs=100,
        session_rotate_after_jobs=0,
        session_rotate_after_minutes=0,
    )


@pytest.fixture
def make_job():
    def _make(job_type=JobType.INVITE, payload=None, attempts=0, max_attempts=3, **kwargs):
        if payload is None:
            payload = {"leadId": 42, "localDate": "2026-01-05"}
        return Job(
            id=kwargs.pop("id", uuid4()),
            type=job_type,
            status=JobStatus.RUNNING,
            payload=payload,
            idempotency_key=kwargs.pop("idempotency_key", f"test:{uuid4()}"),
            attempts=attempts,
            max_attempts=max_attempts,
            **kwargs,
        )

    return _make


class FakeSession:
    def __init__(self, authenticated: bool = True):
        self.authenticated = authenticated
        self.closed = False
        self.reclaimed = 0

    async def is_authenticated(self) -> bool:
        return self.authenticated

    async def reclaim_resources(self) -> None:
        self.reclaimed += 1

    async def close(self) -> None:
        self.closed = True


class FakeSessionFactory:
    """Opens FakeSessions; ``auth`` lists the authentication outcome per open."""

    def __init__(self, auth=None):
        self._auth = list(auth) if auth else []
        self.opened: list[FakeSession] = []
        self.accounts: list[str] = []

    async def open(self, account) -> FakeSession:
        authenticated = self._auth.pop(0) if self._auth else True
        session = FakeSession(authenticated)
        self.opened.append(session)
        self.accounts.append(account.id)
        return session


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def fake_session_factory_cls():
    return FakeSessionFactory


@pytest.fixture
def runner_deps():
    """Spec'd repository mocks for the job runner."""
    jobs = MagicMock(spec=JobRepository)
    jobs.claim_next.return_value = None
    jobs.compute_backoff_ms.return_value = 1200
    jobs.mark_retry_or_dead_letter.return_value = JobStatus.QUEUED

    state = MagicMock(spec=RuntimeStateRepository)
    state.read_flags.return_value = RuntimeFlags()

    incidents = MagicMock(spec=IncidentManager)
    incidents.quarantine.return_value = 9
    incidents.pause.return_value = PauseOutcome(
        incident_id=7,
        paused_until=datetime.now(timezone.utc) + timedelta(minutes=60),
        minutes=60,
    )

    return SimpleNamespace(
        jobs=jobs,
        attempts=MagicMock(spec=JobAttemptsRepository),
        outbox=MagicMock(spec=OutboxRepository),
        state=state,
        stats=MagicMock(spec=DailyStatsRepository),
        lead_state=MagicMock(spec=LeadStateService),
        incidents=incidents,
    )
