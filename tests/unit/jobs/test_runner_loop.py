"""Tests for the scheduled runner loop."""

from unittest.mock import ANY, MagicMock

import pytest

from leadpilot.config import Settings
from leadpilot.jobs.dead_letter import DeadLetterTriageWorker, TriageResult
from leadpilot.jobs.errors import LockHeldError, LockLostError
from leadpilot.jobs.runner import JobRunner, RunnerPassResult
from leadpilot.jobs.worker import RunnerLoop
from leadpilot.repositories.jobs import JobRepository
from leadpilot.repositories.runtime_state import RuntimeFlags, RuntimeStateRepository
from leadpilot.services.locks import LockLease
from leadpilot.services.risk.engine import RiskAction, RiskInputs, RiskSnapshot
from leadpilot.services.risk.gate import GateDecision, RiskGate


def decision(proceed=True, budget=50, action=RiskAction.NORMAL, reason=None):
    return GateDecision(proceed, budget, RiskSnapshot(10, action, RiskInputs()), reason=reason)


@pytest.fixture
def loop_deps():
    lease = MagicMock(spec=LockLease)
    lease.owner_id = "run-loop:host:1:abcd"
    lease.lock_key = "workflow.runner"
    lease.heartbeat.return_value = True
    lease.release.return_value = True

    runner = MagicMock(spec=JobRunner)
    runner.run_pass.return_value = RunnerPassResult()

    gate = MagicMock(spec=RiskGate)
    gate.check.return_value = decision()

    jobs = MagicMock(spec=JobRepository)
    jobs.recover_stale.return_value = 0

    state = MagicMock(spec=RuntimeStateRepository)
    state.read_flags.return_value = RuntimeFlags()

    triage = MagicMock(spec=DeadLetterTriageWorker)
    triage.run.return_value = TriageResult()
    return lease, runner, gate, jobs, state, triage


def build_loop(loop_deps, **settings_overrides):
    lease, runner, gate, jobs, state, triage = loop_deps
    settings = Settings(_env_file=None, **settings_overrides)
    return RunnerLoop(settings, lease, runner, gate, jobs, state, triage=triage)


class TestRunnerLoop:
    def test_loop_creation(self, loop_deps):
        loop = build_loop(loop_deps)
        assert loop._running is False

    @pytest.mark.asyncio
    async def test_runs_cycles_and_releases_lock(self, loop_deps):
        lease, runner, gate, jobs, state, triage = loop_deps
        loop = build_loop(loop_deps)

        results = await loop.start(max_cycles=2)

        assert len(results) == 2
        lease.acquire.assert_awaited_once()
        jobs.recover_stale.assert_awaited_once_with(30)
        jobs.dead_letter_unknown_types.assert_awaited_once()
        assert runner.run_pass.await_count == 2
        lease.sleep.assert_awaited_once_with(900, stop=ANY)
        lease.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_held_lock_fails_fast(self, loop_deps):
        lease, runner, *_ = loop_deps
        lease.acquire.side_effect = LockHeldError("workflow.runner", "other:host:2:ffff")
        loop = build_loop(loop_deps)

        with pytest.raises(LockHeldError):
            await loop.start(max_cycles=1)

        runner.run_pass.assert_not_awaited()
        lease.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_loss_aborts_and_releases(self, loop_deps):
        lease, runner, *_ = loop_deps
        runner.run_pass.side_effect = LockLostError("workflow.runner", lease.owner_id)
        loop = build_loop(loop_deps)

        with pytest.raises(LockLostError):
            await loop.start(max_cycles=3)

        assert runner.run_pass.await_count == 1
        lease.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_heartbeat_aborts(self, loop_deps):
        lease, runner, *_ = loop_deps
        lease.heartbeat.return_value = False
        lease.ensure_held.side_effect = LockLostError("workflow.runner", lease.owner_id)
        loop = build_loop(loop_deps)

        with pytest.raises(LockLostError):
            await loop.start(max_cycles=1)

        runner.run_pass.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_cycle_error_is_logged_and_loop_continues(self, loop_deps):
        lease, runner, *_ = loop_deps
        runner.run_pass.side_effect = [RuntimeError("db hiccup"), RunnerPassResult()]
        loop = build_loop(loop_deps)

        results = await loop.start(max_cycles=2)

        assert runner.run_pass.await_count == 2
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_stop_ends_after_current_cycle(self, loop_deps):
        lease, runner, *_ = loop_deps
        loop = build_loop(loop_deps)

        async def stop_after_pass(*args, **kwargs):
            await loop.stop()
            return RunnerPassResult()

        runner.run_pass.side_effect = stop_after_pass

        results = await loop.start()

        assert len(results) == 1
        lease.sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_during_sleep_wakes_the_loop(self, loop_deps):
        lease, *_ = loop_deps
        loop = build_loop(loop_deps)
        seen = {}

        async def sleep(seconds, stop=None):
            await loop.stop()
            seen["stop_set"] = stop.is_set()

        lease.sleep.side_effect = sleep

        results = await loop.start()

        assert seen == {"stop_set": True}
        assert len(results) == 1
        lease.release.assert_awaited_once()


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_quarantine_skips_cycle(self, loop_deps):
        lease, runner, gate, jobs, state, triage = loop_deps
        state.read_flags.return_value = RuntimeFlags(quarantined=True)
        loop = build_loop(loop_deps)

        result = await loop.run_cycle(1)

        assert result.skipped_reason == "quarantined"
        gate.check.assert_not_awaited()
        runner.run_pass.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pause_skips_cycle(self, loop_deps):
        lease, runner, gate, jobs, state, triage = loop_deps
        state.read_flags.return_value = RuntimeFlags(paused=True, pause_reason="RATE_LIMITED")
        loop = build_loop(loop_deps)

        result = await loop.run_cycle(1)

        assert result.skipped_reason == "paused"
        gate.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gate_stop_skips_pass(self, loop_deps):
        lease, runner, gate, *_ = loop_deps
        gate.check.return_value = decision(False, 0, RiskAction.PAUSE, reason="RISK_STOP")
        loop = build_loop(loop_deps)

        result = await loop.run_cycle(1)

        assert result.skipped_reason == "RISK_STOP"
        runner.run_pass.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_throttled_budget_reaches_runner(self, loop_deps):
        lease, runner, gate, *_ = loop_deps
        gate.check.return_value = decision(True, 25, RiskAction.THROTTLE, reason="RISK_THROTTLE")
        loop = build_loop(loop_deps)

        await loop.run_cycle(1)

        assert runner.run_pass.call_args.kwargs["job_budget"] == 25

    @pytest.mark.asyncio
    async def test_dead_letter_triage_every_n_cycles(self, loop_deps):
        lease, runner, gate, jobs, state, triage = loop_deps
        loop = build_loop(loop_deps, dead_letter_every_cycles=2)

        first = await loop.run_cycle(1)
        second = await loop.run_cycle(2)

        assert first.dead_letter_ran is False
        assert second.dead_letter_ran is True
        triage.run.assert_awaited_once()
