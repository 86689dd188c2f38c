"""Pre-pass risk gate: turns a risk snapshot into a go/no-go and a job budget."""

from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

import structlog

from leadpilot.services.risk.engine import (
    RiskAction,
    RiskInputs,
    RiskSnapshot,
    RiskThresholds,
    evaluate_risk,
)
from leadpilot.services.risk.incidents import IncidentManager

logger = structlog.get_logger(__name__)


class RiskInputsSource(Protocol):
    async def get_risk_inputs(self, local_date: date, hard_invite_cap: int) -> RiskInputs:
        ...

    async def get(self, local_date: date):
        ...


@dataclass
class GateDecision:
    proceed: bool
    job_budget: int
    snapshot: RiskSnapshot
    reason: Optional[str] = None


class RiskGate:
    def __init__(
        self,
        stats: RiskInputsSource,
        incidents: IncidentManager,
        settings,
    ):
        self._stats = stats
        self._incidents = incidents
        self._settings = settings
        self._thresholds = RiskThresholds.from_settings(settings)

    async def check(self, local_date: date) -> GateDecision:
        """Evaluate risk and apply its action.

        QUARANTINE and PAUSE are persisted through the incident manager and
        stop the pass. THROTTLE shrinks the per-account job budget.
        """
        s = self._settings
        inputs = await self._stats.get_risk_inputs(local_date, s.hard_invite_cap)
        snapshot = evaluate_risk(inputs, self._thresholds)
        details = snapshot.to_dict()
        max_jobs = s.max_jobs_per_account_pass

        logger.info("risk_evaluated", **details)

        if snapshot.action == RiskAction.QUARANTINE:
            await self._incidents.quarantine(
                "RISK_QUARANTINE", details, pause_minutes=s.quarantine_pause_minutes
            )
            return GateDecision(False, 0, snapshot, reason="RISK_QUARANTINE")

        if snapshot.action == RiskAction.PAUSE:
            await self._incidents.pause("RISK_STOP", details, s.risk_pause_minutes)
            return GateDecision(False, 0, snapshot, reason="RISK_STOP")

        stats = await self._stats.get(local_date)
        if stats.selector_failures >= s.max_selector_failures_per_day:
            await self._incidents.pause(
                "SELECTOR_FAILURE_BURST",
                {**details, "selector_failures": stats.selector_failures},
                s.auto_pause_minutes_on_failure_burst,
            )
            return GateDecision(False, 0, snapshot, reason="SELECTOR_FAILURE_BURST")
        if stats.run_errors >= s.max_run_errors_per_day:
            await self._incidents.pause(
                "RUN_ERROR_BURST",
                {**details, "run_errors": stats.run_errors},
                s.auto_pause_minutes_on_failure_burst,
            )
            return GateDecision(False, 0, snapshot, reason="RUN_ERROR_BURST")

        if snapshot.action == RiskAction.THROTTLE:
            budget = max(1, int(max_jobs * s.throttle_factor))
            logger.warning("risk_throttle", score=snapshot.score, job_budget=budget)
            return GateDecision(True, budget, snapshot, reason="RISK_THROTTLE")

        return GateDecision(True, max_jobs, snapshot)
