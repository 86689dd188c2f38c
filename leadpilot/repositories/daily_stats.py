"""Repository for per-day counters and the risk inputs derived from them."""

from dataclasses import dataclass
from datetime import date

import structlog

from leadpilot.accounts import DEFAULT_ACCOUNT_ID
from leadpilot.services.risk.engine import RiskInputs

logger = structlog.get_logger(__name__)

STAT_FIELDS = frozenset(
    {
        "invites_sent",
        "messages_sent",
        "challenges_count",
        "selector_failures",
        "run_errors",
    }
)


@dataclass
class DailyStats:
    date: date
    invites_sent: int = 0
    messages_sent: int = 0
    challenges_count: int = 0
    selector_failures: int = 0
    run_errors: int = 0


class DailyStatsRepository:
    def __init__(self, pool):
        self._pool = pool

    async def increment(
        self,
        local_date: date,
        field: str,
        account_id: str = DEFAULT_ACCOUNT_ID,
        amount: int = 1,
    ) -> None:
        """Add ``amount`` to one counter of the (date, account) row."""
        if field not in STAT_FIELDS:
            raise ValueError(f"Unknown daily stat: {field}")
        # field is whitelisted above
        query = f"""
            INSERT INTO daily_stats (date, account_id, {field})
            VALUES ($1, $2, $3)
            ON CONFLICT (date, account_id) DO UPDATE SET
                {field} = daily_stats.{field} + EXCLUDED.{field}
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, local_date, account_id, amount)

    async def get(self, local_date: date) -> DailyStats:
        """Counters for a day summed across accounts."""
        query = """
            SELECT
                COALESCE(SUM(invites_sent), 0) AS invites_sent,
                COALESCE(SUM(messages_sent), 0) AS messages_sent,
                COALESCE(SUM(challenges_count), 0) AS challenges_count,
                COALESCE(SUM(selector_failures), 0) AS selector_failures,
                COALESCE(SUM(run_errors), 0) AS run_errors
            FROM daily_stats WHERE date = $1
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, local_date)
        return DailyStats(
            date=local_date,
            invites_sent=int(row["invites_sent"]),
            messages_sent=int(row["messages_sent"]),
            challenges_count=int(row["challenges_count"]),
            selector_failures=int(row["selector_failures"]),
            run_errors=int(row["run_errors"]),
        )

    async def get_risk_inputs(self, local_date: date, hard_invite_cap: int) -> RiskInputs:
        """Gather the rolling metrics the risk engine scores."""
        lead_query = """
            SELECT
                COUNT(*) FILTER (WHERE status = 'INVITED') AS pending,
                COUNT(*) FILTER (WHERE invited_at IS NOT NULL) AS invited_total
            FROM leads
        """
        attempt_query = """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE NOT success) AS failed
            FROM job_attempts
            WHERE started_at >= now() - interval '24 hours'
        """
        async with self._pool.acquire() as conn:
            leads = await conn.fetchrow(lead_query)
            attempts = await conn.fetchrow(attempt_query)
        stats = await self.get(local_date)

        invited_total = leads["invited_total"] or 0
        pending_ratio = leads["pending"] / invited_total if invited_total > 0 else 0.0

        total_attempts = attempts["total"] or 0
        error_rate = attempts["failed"] / total_attempts if total_attempts > 0 else 0.0

        return RiskInputs(
            pending_ratio=pending_ratio,
            error_rate=error_rate,
            selector_failure_rate=stats.selector_failures / max(1, total_attempts),
            challenge_count=stats.challenges_count,
            invite_velocity_ratio=(
                stats.invites_sent / hard_invite_cap if hard_invite_cap > 0 else 0.0
            ),
        )
