"""Dead letter triage.

Sweeps dead-lettered jobs that triage has not yet seen and decides, from
the last error text, whether to give them another chance later (recycle)
or keep them dead for good (terminal).
"""

import random
from dataclasses import dataclass

import structlog

from leadpilot.repositories.jobs import JobRepository

logger = structlog.get_logger(__name__)

TERMINAL_PATTERNS = (
    "challenge_detected",
    "page not found",
    "invalid url",
    "user not found",
    "banned",
    "restricted",
    "404",
    "not a valid profile url",
    "not a valid linkedin url",
)

RECOVERABLE_PATTERNS = (
    "timeout",
    "etimedout",
    "network",
    "econnrefused",
    "econnreset",
    "connection reset",
    "target closed",
    "page target is closed",
    "navigation failed",
    "proxy error",
    "rate limit",
    "429",
    "502",
    "503",
    "504",
)


def is_error_recoverable(error_message: str) -> bool:
    """Classify an error message.

    Terminal markers win over recoverable ones. Unknown errors count as
    recoverable: a broken selector is usually fixed by a later deploy.
    """
    lowered = error_message.lower()
    if any(pattern in lowered for pattern in TERMINAL_PATTERNS):
        return False
    if any(pattern in lowered for pattern in RECOVERABLE_PATTERNS):
        return True
    return True


@dataclass
class TriageResult:
    processed: int = 0
    recycled: int = 0
    dead_lettered: int = 0


class DeadLetterTriageWorker:
    def __init__(
        self,
        jobs: JobRepository,
        batch_size: int = 100,
        recycle_delay_seconds: int = 86400,
        recycle_jitter_seconds: int = 3600,
        recycle_priority: int = 150,
    ):
        self._jobs = jobs
        self.batch_size = batch_size
        self.recycle_delay_seconds = recycle_delay_seconds
        self.recycle_jitter_seconds = recycle_jitter_seconds
        self.recycle_priority = recycle_priority

    async def run(self) -> TriageResult:
        """Triage in batches until a short batch signals the end."""
        result = TriageResult()
        logger.info("dead_letter_triage_started", batch_size=self.batch_size)

        while True:
            batch = await self._jobs.list_untriaged_dead_letters(self.batch_size)
            for job in batch:
                result.processed += 1
                error = job.last_error or "Unknown Error"

                if is_error_recoverable(error):
                    jitter = (
                        random.randint(0, self.recycle_jitter_seconds)
                        if self.recycle_jitter_seconds
                        else 0
                    )
                    await self._jobs.recycle(
                        job.id, self.recycle_delay_seconds + jitter, self.recycle_priority
                    )
                    result.recycled += 1
                    logger.info(
                        "dead_letter_recycled",
                        job_id=str(job.id),
                        job_type=job.type.value,
                        error=error[:120],
                    )
                else:
                    await self._jobs.mark_triaged(job.id, f"Terminated. Original error: {error}")
                    result.dead_lettered += 1
                    logger.warning(
                        "dead_letter_terminal",
                        job_id=str(job.id),
                        job_type=job.type.value,
                        error=error[:120],
                    )

            if len(batch) < self.batch_size:
                break

        logger.info(
            "dead_letter_triage_done",
            processed=result.processed,
            recycled=result.recycled,
            dead_lettered=result.dead_lettered,
        )
        return result
