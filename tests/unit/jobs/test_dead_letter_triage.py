"""Tests for dead letter triage."""

from unittest.mock import MagicMock

import pytest

from leadpilot.jobs.dead_letter import DeadLetterTriageWorker, is_error_recoverable
from leadpilot.jobs.types import JobStatus
from leadpilot.repositories.jobs import JobRepository


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            "Navigation timeout of 30000 ms exceeded",
            "ETIMEDOUT",
            "ECONNRESET",
            "HTTP 503",
            "Target closed",
        ],
    )
    def test_recoverable(self, error):
        assert is_error_recoverable(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            "Page not found",
            "404 user not found",
            "Account restricted",
            "Not a valid profile URL",
            "CHALLENGE_DETECTED: Security verification required",
        ],
    )
    def test_terminal(self, error):
        assert is_error_recoverable(error) is False

    def test_terminal_beats_recoverable(self):
        assert is_error_recoverable("timeout after 404 page") is False

    def test_unknown_errors_are_recoverable(self):
        assert is_error_recoverable("selector .send-button missing") is True


@pytest.fixture
def jobs():
    jobs = MagicMock(spec=JobRepository)
    jobs.list_untriaged_dead_letters.return_value = []
    return jobs


def dead(make_job, error):
    job = make_job(last_error=error)
    job.status = JobStatus.DEAD_LETTER
    return job


class TestDeadLetterTriageWorker:
    @pytest.mark.asyncio
    async def test_recycles_and_terminates(self, jobs, make_job):
        recoverable = dead(make_job, "Navigation timeout")
        terminal = dead(make_job, "Page not found")
        jobs.list_untriaged_dead_letters.return_value = [recoverable, terminal]
        worker = DeadLetterTriageWorker(jobs, batch_size=10, recycle_jitter_seconds=0)

        result = await worker.run()

        assert (result.processed, result.recycled, result.dead_lettered) == (2, 1, 1)
        jobs.recycle.assert_awaited_once_with(recoverable.id, 86400, 150)
        jobs.mark_triaged.assert_awaited_once_with(
            terminal.id, "Terminated. Original error: Page not found"
        )

    @pytest.mark.asyncio
    async def test_recycle_delay_includes_jitter(self, jobs, make_job):
        jobs.list_untriaged_dead_letters.return_value = [dead(make_job, "timeout")]
        worker = DeadLetterTriageWorker(jobs, recycle_delay_seconds=100, recycle_jitter_seconds=10)

        await worker.run()

        delay = jobs.recycle.call_args.args[1]
        assert 100 <= delay <= 110

    @pytest.mark.asyncio
    async def test_missing_error_is_unknown_and_recycled(self, jobs, make_job):
        jobs.list_untriaged_dead_letters.return_value = [dead(make_job, None)]
        worker = DeadLetterTriageWorker(jobs)

        result = await worker.run()

        assert result.recycled == 1

    @pytest.mark.asyncio
    async def test_full_batch_fetches_again(self, jobs, make_job):
        jobs.list_untriaged_dead_letters.side_effect = [
            [dead(make_job, "timeout"), dead(make_job, "timeout")],
            [dead(make_job, "404")],
        ]
        worker = DeadLetterTriageWorker(jobs, batch_size=2)

        result = await worker.run()

        assert jobs.list_untriaged_dead_letters.await_count == 2
        assert result.processed == 3

    @pytest.mark.asyncio
    async def test_empty_queue(self, jobs):
        worker = DeadLetterTriageWorker(jobs)

        result = await worker.run()

        assert result.processed == 0
        jobs.recycle.assert_not_awaited()
