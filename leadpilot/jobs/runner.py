"""Job runner: one pass over every account's queue.

Accounts run one after another, each with its own session. Within an
account jobs are claimed and executed strictly sequentially until the
queue drains, the job budget is spent, or a stop condition fires
(pause, quarantine, challenge, open breaker, failed rotation).
"""

import time
import traceback
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from prometheus_client import Counter

from leadpilot.accounts import AccountProfile, include_legacy_queue
from leadpilot.config import Settings
from leadpilot.jobs.context import WorkerContext
from leadpilot.jobs.errors import (
    ChallengeDetectedError,
    LeadNotFoundError,
    LockLostError,
    RetryableWorkerError,
    error_code_of,
)
from leadpilot.jobs.models import Job
from leadpilot.jobs.payloads import lead_id_of, parse_payload
from leadpilot.jobs.registry import ActionRegistry, FollowUpPhase
from leadpilot.jobs.result import WorkerResult
from leadpilot.jobs.types import JobStatus, JobType
from leadpilot.repositories.daily_stats import DailyStatsRepository
from leadpilot.repositories.job_attempts import JobAttemptsRepository
from leadpilot.repositories.jobs import JobRepository
from leadpilot.repositories.outbox import OutboxRepository
from leadpilot.repositories.runtime_state import RuntimeStateRepository
from leadpilot.services.leads.models import LeadStatus
from leadpilot.services.leads.state_machine import LeadStateService
from leadpilot.services.locks import LockLease
from leadpilot.services.risk.breaker import ConsecutiveFailureBreaker
from leadpilot.services.risk.incidents import IncidentManager
from leadpilot.services.session import Session, SessionFactory
from leadpilot.services.side_channel import BestEffortSideChannel

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JOBS_PROCESSED_TOTAL = Counter(
    "leadpilot_jobs_processed_total",
    "Jobs executed by the runner",
    ["job_type", "outcome"],  # succeeded, retry, dead_letter, challenge, deferred
)
ACCOUNT_PASSES_TOTAL = Counter(
    "leadpilot_account_passes_total",
    "Account passes by stop reason",
    ["stop_reason"],
)

# Counters bumped when a job of this type succeeds for real
SUCCESS_STATS = {
    JobType.INVITE: "invites_sent",
    JobType.MESSAGE: "messages_sent",
}


class StopReason:
    DRAINED = "drained"
    BUDGET_EXHAUSTED = "budget_exhausted"
    PAUSED = "paused"
    QUARANTINED = "quarantined"
    LOGIN_MISSING = "login_missing"
    CHALLENGE = "challenge"
    POLICY_PAUSE = "policy_pause"
    BREAKER_OPEN = "breaker_open"
    ROTATION_FAILED = "rotation_failed"


@dataclass
class AccountPassResult:
    account_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0
    rotations: int = 0
    stop_reason: str = StopReason.DRAINED
    follow_up: Optional[WorkerResult] = None


@dataclass
class RunnerPassResult:
    accounts: list[AccountPassResult] = field(default_factory=list)
    skipped_accounts: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(a.processed for a in self.accounts)


class JobRunner:
    """Executes queued jobs through the registered action handlers."""

    def __init__(
        self,
        pool,
        settings: Settings,
        registry: ActionRegistry,
        session_factory: SessionFactory,
        follow_up: Optional[FollowUpPhase] = None,
        lease: Optional[LockLease] = None,
        incidents: Optional[IncidentManager] = None,
        side_channel: Optional[BestEffortSideChannel] = None,
        jobs: Optional[JobRepository] = None,
        attempts: Optional[JobAttemptsRepository] = None,
        outbox: Optional[OutboxRepository] = None,
        state: Optional[RuntimeStateRepository] = None,
        stats: Optional[DailyStatsRepository] = None,
        lead_state: Optional[LeadStateService] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._registry = registry
        self._session_factory = session_factory
        self._follow_up = follow_up
        self._lease = lease
        self._side_channel = side_channel or BestEffortSideChannel(settings.side_channel_timeout_s)
        self._jobs = jobs or JobRepository(
            pool, settings.job_retry_base_ms, settings.job_retry_jitter_ms
        )
        self._attempts = attempts or JobAttemptsRepository(pool)
        self._outbox = outbox or OutboxRepository(pool)
        self._state = state or RuntimeStateRepository(pool)
        self._stats = stats or DailyStatsRepository(pool)
        self._lead_state = lead_state or LeadStateService(pool, outbox=self._outbox)
        self._incidents = incidents or IncidentManager(
            pool,
            state=self._state,
            outbox=self._outbox,
            side_channel=self._side_channel,
            rate_limit_types=tuple(settings.rate_limit_error_codes),
            max_pause_minutes=settings.policy_pause_max_minutes,
        )
        self._clock = clock

    async def run_pass(
        self,
        local_date: date,
        job_budget: Optional[int] = None,
        allowed_types: Optional[list[JobType]] = None,
        dry_run: bool = False,
    ) -> RunnerPassResult:
        """Run every configured account once, in order."""
        budget = job_budget or self._settings.max_jobs_per_account_pass
        types = allowed_types or self._registry.job_types
        accounts = self._settings.accounts
        result = RunnerPassResult()

        flags = await self._state.read_flags()
        if flags.quarantined:
            logger.warning("job_runner_skipped_quarantine")
            result.skipped_accounts = [a.id for a in accounts]
            return result

        for index, account in enumerate(accounts):
            legacy = include_legacy_queue(index, account, len(accounts))
            logger.info(
                "job_runner_account_start",
                account_id=account.id,
                include_legacy_queue=legacy,
                job_budget=budget,
            )
            account_result = await self._run_account(
                account, legacy, local_date, budget, types, dry_run
            )
            result.accounts.append(account_result)
            ACCOUNT_PASSES_TOTAL.labels(stop_reason=account_result.stop_reason).inc()
            logger.info(
                "job_runner_account_done",
                account_id=account.id,
                processed=account_result.processed,
                stop_reason=account_result.stop_reason,
            )

            flags = await self._state.read_flags()
            if flags.quarantined:
                result.skipped_accounts = [a.id for a in accounts[index + 1:]]
                if result.skipped_accounts:
                    logger.warning(
                        "job_runner_remaining_accounts_skipped",
                        skipped=result.skipped_accounts,
                    )
                break

        return result

    async def _run_account(
        self,
        account: AccountProfile,
        legacy: bool,
        local_date: date,
        budget: int,
        allowed_types: list[JobType],
        dry_run: bool,
    ) -> AccountPassResult:
        s = self._settings
        result = AccountPassResult(account_id=account.id)

        session = await self._open_session(account, phase="start")
        if session is None:
            result.stop_reason = StopReason.LOGIN_MISSING
            return result

        breaker = ConsecutiveFailureBreaker(s.max_consecutive_job_failures)
        on_session = 0
        session_started = self._clock()
        ctx: Optional[WorkerContext] = None

        try:
            while True:
                flags = await self._state.read_flags()
                ctx = WorkerContext(
                    account=account,
                    session=session,
                    flags=flags,
                    local_date=local_date,
                    dry_run=dry_run,
                )
                if flags.quarantined:
                    result.stop_reason = StopReason.QUARANTINED
                    break
                if flags.paused:
                    logger.warning(
                        "job_runner_skipped_paused",
                        account_id=account.id,
                        reason=flags.pause_reason,
                        paused_until=str(flags.paused_until),
                    )
                    result.stop_reason = StopReason.PAUSED
                    break
                if result.processed >= budget:
                    result.stop_reason = StopReason.BUDGET_EXHAUSTED
                    break

                if self._lease is not None:
                    self._lease.ensure_held()
                job = await self._jobs.claim_next(allowed_types, account.id, legacy)
                if job is None:
                    result.stop_reason = StopReason.DRAINED
                    break

                stop = await self._process_job(job, ctx, breaker, result)
                result.processed += 1
                on_session += 1
                if stop:
                    result.stop_reason = stop
                    break

                if on_session % s.maintenance_every_jobs == 0:
                    await self._side_channel.publish(
                        "session_maintenance", session.reclaim_resources
                    )

                reasons = self._rotation_reasons(on_session, self._clock() - session_started)
                if reasons:
                    rotated = await self._rotate(session, account, "+".join(reasons))
                    if rotated is None:
                        session = None
                        result.stop_reason = StopReason.ROTATION_FAILED
                        break
                    session = rotated
                    result.rotations += 1
                    on_session = 0
                    session_started = self._clock()

            if result.stop_reason == StopReason.DRAINED and self._follow_up and ctx:
                result.follow_up = await self._run_follow_up(ctx)
        finally:
            if session is not None:
                await self._close_session(session, account)

        return result

    def _rotation_reasons(self, on_session: int, elapsed_seconds: float) -> list[str]:
        s = self._settings
        reasons = []
        if s.session_rotate_after_jobs and on_session >= s.session_rotate_after_jobs:
            reasons.append(f"threshold_{s.session_rotate_after_jobs}_jobs")
        if s.session_rotate_after_minutes and elapsed_seconds >= s.session_rotate_after_minutes * 60:
            reasons.append(f"threshold_{s.session_rotate_after_minutes}_minutes")
        if elapsed_seconds >= s.session_hard_ceiling_minutes * 60:
            reasons.append("hard_ceiling")
        return reasons

    async def _guarded(self, awaitable: Awaitable[T]) -> T:
        if self._lease is None:
            return await awaitable
        return await self._lease.guard(awaitable)

    async def _process_job(
        self,
        job: Job,
        ctx: WorkerContext,
        breaker: ConsecutiveFailureBreaker,
        result: AccountPassResult,
    ) -> Optional[str]:
        """Execute one claimed job and persist its outcome.

        Returns a stop reason when the account loop must end.
        """
        started_at = datetime.now(timezone.utc)
        log = logger.bind(
            job_id=str(job.id),
            job_type=job.type.value,
            account_id=ctx.account.id,
            attempt=job.attempts + 1,
        )
        log.info("job_started")

        if job.type not in self._registry:
            error = f"No handler registered for job type: {job.type.value}"
            log.error("job_no_handler")
            return await self._on_failure(
                job, ctx, breaker, result, started_at, "NO_HANDLER", error, force_dead_letter=True
            )

        try:
            payload = parse_payload(job.type, job.payload)
            handler = self._registry.get_handler(job.type)
            outcome = await self._guarded(handler(payload, ctx))
        except LockLostError:
            log.error("job_aborted_lock_lost")
            raise
        except ChallengeDetectedError as e:
            return await self._on_challenge(job, ctx, started_at, str(e))
        except RetryableWorkerError as e:
            if e.code in self._settings.policy_error_codes:
                return await self._on_policy(job, ctx, result, started_at, e)
            log.warning("job_failed", error=str(e), error_code=e.code)
            return await self._on_failure(
                job, ctx, breaker, result, started_at, e.code, str(e)
            )
        except Exception as e:
            log.warning(
                "job_failed",
                error=str(e),
                error_code=error_code_of(e),
                traceback=traceback.format_exc(),
            )
            return await self._on_failure(
                job, ctx, breaker, result, started_at, error_code_of(e), str(e) or type(e).__name__
            )

        await self._on_success(job, ctx, breaker, result, started_at, outcome)
        return None

    async def _on_success(
        self,
        job: Job,
        ctx: WorkerContext,
        breaker: ConsecutiveFailureBreaker,
        result: AccountPassResult,
        started_at: datetime,
        outcome: WorkerResult,
    ) -> None:
        await self._jobs.mark_succeeded(job.id)
        await self._attempts.record_attempt(job.id, True, started_at=started_at)

        topic = "job.succeeded_with_errors" if outcome.has_errors else "job.succeeded"
        await self._outbox.push(
            topic,
            {
                "job_id": str(job.id),
                "type": job.type.value,
                "account_id": ctx.account.id,
                "dry_run": ctx.dry_run,
                "processed_count": outcome.processed_count,
                "errors": [
                    {"message": err.message, "lead_id": err.lead_id} for err in outcome.errors
                ],
            },
            f"{topic}:{job.id}:{job.type.value}",
        )

        stat = SUCCESS_STATS.get(job.type)
        if stat and not ctx.dry_run:
            await self._stats.increment(ctx.local_date, stat, ctx.account.id)

        breaker.record_success()
        result.succeeded += 1
        JOBS_PROCESSED_TOTAL.labels(job_type=job.type.value, outcome="succeeded").inc()
        logger.info(
            "job_succeeded",
            job_id=str(job.id),
            job_type=job.type.value,
            partial_errors=len(outcome.errors),
        )

    async def _on_challenge(
        self, job: Job, ctx: WorkerContext, started_at: datetime, message: str
    ) -> str:
        attempts = job.attempts + 1
        account_id = ctx.account.id
        await self._attempts.record_attempt(
            job.id, False, "CHALLENGE_DETECTED", message, started_at=started_at
        )
        await self._stats.increment(ctx.local_date, "run_errors", account_id)
        await self._stats.increment(ctx.local_date, "challenges_count", account_id)
        await self._incidents.quarantine(
            "CHALLENGE_DETECTED",
            {
                "job_id": str(job.id),
                "job_type": job.type.value,
                "message": message,
                "account_id": account_id,
            },
            pause_minutes=self._settings.quarantine_pause_minutes,
        )
        # Never retried: dead-letter immediately, already triaged as terminal
        await self._jobs.mark_retry_or_dead_letter(job.id, attempts, attempts, 0, message)
        await self._jobs.mark_triaged(job.id, f"CHALLENGE_DETECTED: {message}")
        JOBS_PROCESSED_TOTAL.labels(job_type=job.type.value, outcome="challenge").inc()
        logger.error(
            "job_challenge_detected",
            job_id=str(job.id),
            job_type=job.type.value,
            account_id=account_id,
            message=message,
        )
        return StopReason.CHALLENGE

    async def _on_policy(
        self,
        job: Job,
        ctx: WorkerContext,
        result: AccountPassResult,
        started_at: datetime,
        error: RetryableWorkerError,
    ) -> str:
        """Platform policy limit: pause first, then defer the job past the pause.

        The retry budget is untouched; the job did nothing wrong.
        """
        message = str(error)
        await self._attempts.record_attempt(
            job.id, False, error.code, message, started_at=started_at
        )
        await self._stats.increment(ctx.local_date, "run_errors", ctx.account.id)
        pause = await self._incidents.pause(
            error.code,
            {
                "job_id": str(job.id),
                "job_type": job.type.value,
                "message": message,
                "account_id": ctx.account.id,
            },
            self._settings.policy_pause_minutes,
        )

        delay = pause.minutes * 60
        if pause.paused_until is not None:
            remaining = (pause.paused_until - datetime.now(timezone.utc)).total_seconds()
            delay = max(delay, remaining)
        await self._jobs.requeue(job.id, delay, message)
        await self._outbox.push(
            "job.deferred",
            {
                "job_id": str(job.id),
                "type": job.type.value,
                "code": error.code,
                "incident_id": pause.incident_id,
                "account_id": ctx.account.id,
            },
            f"job.deferred:{job.id}:{pause.incident_id}",
        )
        result.failed += 1
        JOBS_PROCESSED_TOTAL.labels(job_type=job.type.value, outcome="deferred").inc()
        logger.warning(
            "job_deferred_policy",
            job_id=str(job.id),
            code=error.code,
            delay_seconds=round(delay),
        )
        return StopReason.POLICY_PAUSE

    async def _on_failure(
        self,
        job: Job,
        ctx: WorkerContext,
        breaker: ConsecutiveFailureBreaker,
        result: AccountPassResult,
        started_at: datetime,
        code: str,
        message: str,
        force_dead_letter: bool = False,
    ) -> Optional[str]:
        s = self._settings
        attempts = job.attempts + 1
        account_id = ctx.account.id

        await self._attempts.record_attempt(job.id, False, code, message, started_at=started_at)
        await self._stats.increment(ctx.local_date, "run_errors", account_id)
        if code == s.selector_failure_code:
            await self._stats.increment(ctx.local_date, "selector_failures", account_id)

        max_attempts = attempts if force_dead_letter else job.max_attempts
        backoff_ms = self._jobs.compute_backoff_ms(attempts)
        status = await self._jobs.mark_retry_or_dead_letter(
            job.id, attempts, max_attempts, backoff_ms, message
        )
        await self._outbox.push(
            "job.failed",
            {
                "job_id": str(job.id),
                "type": job.type.value,
                "attempts": attempts,
                "status": status.value,
                "error": message,
                "account_id": account_id,
            },
            f"job.failed:{job.id}:{attempts}",
        )

        result.failed += 1
        if status == JobStatus.DEAD_LETTER:
            result.dead_lettered += 1
            JOBS_PROCESSED_TOTAL.labels(job_type=job.type.value, outcome="dead_letter").inc()
            if job.type.affects_lead:
                await self._park_lead(job)
        else:
            JOBS_PROCESSED_TOTAL.labels(job_type=job.type.value, outcome="retry").inc()

        if breaker.record_failure():
            await self._incidents.pause(
                "CONSECUTIVE_JOB_FAILURES",
                {
                    "threshold": breaker.threshold,
                    "consecutive_failures": breaker.consecutive_failures,
                    "last_job_id": str(job.id),
                    "last_job_type": job.type.value,
                    "last_error": message,
                    "account_id": account_id,
                },
                s.auto_pause_minutes_on_failure_burst,
            )
            return StopReason.BREAKER_OPEN
        return None

    async def _park_lead(self, job: Job) -> None:
        """Move the job's lead to REVIEW_REQUIRED after a dead letter."""
        lead_id = lead_id_of(job.payload)
        if lead_id is None:
            return
        try:
            await self._lead_state.transition(
                lead_id,
                LeadStatus.REVIEW_REQUIRED,
                f"job_dead_letter_{job.type.value.lower()}",
                {"job_id": str(job.id)},
            )
        except LeadNotFoundError:
            logger.warning("job_dead_letter_lead_missing", job_id=str(job.id), lead_id=lead_id)
            return
        logger.warning(
            "job_dead_letter_lead_review_required",
            job_id=str(job.id),
            lead_id=lead_id,
            job_type=job.type.value,
        )

    async def _run_follow_up(self, ctx: WorkerContext) -> Optional[WorkerResult]:
        """One-shot follow-up phase. Never fails the pass."""
        assert self._follow_up is not None
        try:
            outcome = await self._guarded(self._follow_up(ctx))
        except LockLostError:
            raise
        except ChallengeDetectedError as e:
            await self._stats.increment(ctx.local_date, "challenges_count", ctx.account.id)
            await self._incidents.quarantine(
                "CHALLENGE_DETECTED",
                {"phase": "follow_up", "message": str(e), "account_id": ctx.account.id},
                pause_minutes=self._settings.quarantine_pause_minutes,
            )
            return None
        except Exception as e:
            logger.warning(
                "follow_up_failed",
                account_id=ctx.account.id,
                error=str(e),
                traceback=traceback.format_exc(),
            )
            return None

        logger.info(
            "follow_up_done",
            account_id=ctx.account.id,
            processed=outcome.processed_count,
            errors=len(outcome.errors),
        )
        return outcome

    async def _open_session(self, account: AccountProfile, phase: str) -> Optional[Session]:
        """Open and verify a session; quarantine when not authenticated."""
        session = await self._session_factory.open(account)
        if await session.is_authenticated():
            return session

        await self._close_session(session, account)
        await self._incidents.quarantine(
            "LOGIN_MISSING",
            {
                "message": "Session is not authenticated",
                "account_id": account.id,
                "phase": phase,
            },
        )
        return None

    async def _rotate(
        self, session: Session, account: AccountProfile, reason: str
    ) -> Optional[Session]:
        logger.info("session_rotating", account_id=account.id, reason=reason)
        await self._close_session(session, account)
        return await self._open_session(account, phase=f"rotation:{reason}")

    async def _close_session(self, session: Session, account: AccountProfile) -> None:
        await self._side_channel.publish("session_close", session.close)
