"""Runner loop - holds the runtime lock and drives job passes on a schedule."""
import asyncio
import traceback
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

import structlog

from leadpilot import __version__
from leadpilot.config import Settings
from leadpilot.jobs.dead_letter import DeadLetterTriageWorker
from leadpilot.jobs.errors import LockLostError
from leadpilot.jobs.runner import JobRunner, RunnerPassResult
from leadpilot.repositories.jobs import JobRepository
from leadpilot.repositories.runtime_state import RuntimeStateRepository
from leadpilot.services.locks import LockLease
from leadpilot.services.risk.gate import GateDecision, RiskGate

logger = structlog.get_logger(__name__)


def local_today(settings: Settings) -> date:
    """Today's date in the timezone daily stats are bucketed by."""
    return datetime.now(ZoneInfo(settings.local_timezone)).date()


@dataclass
class CycleResult:
    cycle: int
    gate: Optional[GateDecision] = None
    pass_result: Optional[RunnerPassResult] = None
    skipped_reason: Optional[str] = None
    dead_letter_ran: bool = False


class RunnerLoop:
    """Scheduled runner cycles under a single runtime lock lease."""

    def __init__(
        self,
        settings: Settings,
        lease: LockLease,
        runner: JobRunner,
        gate: RiskGate,
        jobs: JobRepository,
        state: RuntimeStateRepository,
        triage: Optional[DeadLetterTriageWorker] = None,
    ):
        self._settings = settings
        self._lease = lease
        self._runner = runner
        self._gate = gate
        self._jobs = jobs
        self._state = state
        self._triage = triage
        self._running = False
        self._stop_event = asyncio.Event()

    async def start(self, max_cycles: Optional[int] = None) -> list[CycleResult]:
        """Acquire the lock and loop until stopped, lock loss or ``max_cycles``.

        Raises:
            LockHeldError: another live runner owns the lock
            LockLostError: the lease was lost mid-run
        """
        s = self._settings
        await self._lease.acquire()
        self._running = True
        self._stop_event.clear()
        results: list[CycleResult] = []

        logger.info(
            "runner_started",
            owner_id=self._lease.owner_id,
            version=__version__,
            lock_key=self._lease.lock_key,
            interval_s=s.loop_interval_s,
        )

        try:
            recovered = await self._jobs.recover_stale(s.job_stale_minutes)
            if recovered:
                logger.warning("runner_recovered_stale_jobs", count=recovered)
            await self._jobs.dead_letter_unknown_types()

            cycle = 0
            while self._running:
                cycle += 1
                try:
                    results.append(await self.run_cycle(cycle))
                except LockLostError:
                    raise
                except asyncio.CancelledError:
                    logger.info("runner_cancelled", owner_id=self._lease.owner_id)
                    break
                except Exception as e:
                    logger.error(
                        "runner_cycle_error",
                        cycle=cycle,
                        error=str(e),
                        traceback=traceback.format_exc(),
                    )

                if max_cycles is not None and cycle >= max_cycles:
                    break
                if self._running:
                    await self._lease.sleep(s.loop_interval_s, stop=self._stop_event)
        finally:
            self._running = False
            released = await self._lease.release()
            logger.info("runner_stopped", owner_id=self._lease.owner_id, released=released)

        return results

    async def stop(self):
        """Stop after the current cycle, cutting short any sleep between cycles."""
        self._running = False
        self._stop_event.set()

    async def run_cycle(self, cycle: int = 1) -> CycleResult:
        """One cycle: renew, gate on risk, run a pass, then triage when due."""
        s = self._settings
        result = CycleResult(cycle=cycle)

        if not await self._lease.heartbeat():
            self._lease.ensure_held()

        flags = await self._state.read_flags()
        if flags.quarantined:
            logger.warning("runner_cycle_skipped", cycle=cycle, reason="quarantined")
            result.skipped_reason = "quarantined"
            return result

        today = local_today(s)
        if flags.paused:
            logger.warning(
                "runner_cycle_skipped",
                cycle=cycle,
                reason="paused",
                pause_reason=flags.pause_reason,
                paused_until=str(flags.paused_until),
            )
            result.skipped_reason = "paused"
        else:
            result.gate = await self._gate.check(today)
            if not result.gate.proceed:
                result.skipped_reason = result.gate.reason
            else:
                async with self._lease.keepalive():
                    result.pass_result = await self._runner.run_pass(
                        today, job_budget=result.gate.job_budget
                    )
                logger.info(
                    "runner_cycle_done",
                    cycle=cycle,
                    processed=result.pass_result.processed,
                    risk_score=result.gate.snapshot.score,
                    risk_action=result.gate.snapshot.action.value,
                )

        if self._triage is not None and cycle % s.dead_letter_every_cycles == 0:
            async with self._lease.keepalive():
                await self._triage.run()
            result.dead_letter_ran = True

        return result
