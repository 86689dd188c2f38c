"""Incident handling: quarantine, timed pauses and resume.

State changes (incident row, flag/pause, outbox event) commit together;
the alert goes out afterwards through the best-effort side channel.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from leadpilot.repositories.outbox import OutboxRepository
from leadpilot.repositories.runtime_state import QUARANTINE_FLAG, RuntimeStateRepository
from leadpilot.services.alerts.telegram import AlertNotifier
from leadpilot.services.side_channel import BestEffortSideChannel

logger = structlog.get_logger(__name__)

MAX_PAUSE_MINUTES = 24 * 60


@dataclass
class PauseOutcome:
    incident_id: int
    paused_until: Optional[datetime]
    minutes: int


class IncidentManager:
    def __init__(
        self,
        pool,
        state: Optional[RuntimeStateRepository] = None,
        outbox: Optional[OutboxRepository] = None,
        side_channel: Optional[BestEffortSideChannel] = None,
        notifier: Optional[AlertNotifier] = None,
        rate_limit_types: tuple[str, ...] = ("RATE_LIMITED", "HTTP_429"),
        max_pause_minutes: int = MAX_PAUSE_MINUTES,
    ):
        self._pool = pool
        self._state = state or RuntimeStateRepository(pool)
        self._outbox = outbox or OutboxRepository(pool)
        self._side_channel = side_channel or BestEffortSideChannel()
        self._notifier = notifier
        self._rate_limit_types = set(rate_limit_types)
        self._max_pause_minutes = max_pause_minutes

    def _is_rate_limit(self, incident_type: str) -> bool:
        return incident_type in self._rate_limit_types or "429" in incident_type

    async def quarantine(
        self,
        incident_type: str,
        details: dict[str, Any],
        pause_minutes: Optional[int] = None,
    ) -> int:
        """Open a CRITICAL incident and set the account quarantine flag.

        With ``pause_minutes`` the global automation pause is set as well.
        Returns the incident id.
        """
        paused_until = None
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                incident_id = await self._state.create_incident(
                    incident_type, "CRITICAL", details, conn=conn
                )
                await self._state.set_flag(QUARANTINE_FLAG, "true", conn=conn)
                if pause_minutes:
                    paused_until = await self._state.set_pause(
                        datetime.now(timezone.utc) + timedelta(minutes=pause_minutes),
                        incident_type,
                        conn=conn,
                    )
                await self._outbox.push(
                    "incident.opened",
                    {
                        "incident_id": incident_id,
                        "type": incident_type,
                        "severity": "CRITICAL",
                        "details": details,
                    },
                    f"incident.opened:{incident_id}",
                    conn=conn,
                )

        logger.error(
            "account_quarantined",
            incident_id=incident_id,
            incident_type=incident_type,
            paused_until=str(paused_until) if paused_until else None,
            details=details,
        )
        await self._alert(f"CRITICAL incident #{incident_id}: {incident_type}", "CRITICAL", details)
        return incident_id

    async def pause(
        self,
        incident_type: str,
        details: dict[str, Any],
        base_minutes: int,
    ) -> PauseOutcome:
        """Open a WARN incident and pause automation.

        Rate-limit incidents double the pause for every same-type incident
        in the last 24 hours, capped at ``max_pause_minutes``.
        """
        minutes = base_minutes
        details = dict(details)
        if self._is_rate_limit(incident_type):
            recent = await self._state.count_recent_incidents(incident_type, 24)
            multiplier = 2**recent
            minutes = min(self._max_pause_minutes, base_minutes * multiplier)
            details.update(
                recent_incidents=recent,
                backoff_multiplier=multiplier,
                base_minutes=base_minutes,
                final_minutes=minutes,
            )

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                incident_id = await self._state.create_incident(
                    incident_type, "WARN", details, conn=conn
                )
                paused_until = await self._state.set_pause(
                    datetime.now(timezone.utc) + timedelta(minutes=minutes),
                    incident_type,
                    conn=conn,
                )
                await self._outbox.push(
                    "automation.paused",
                    {
                        "incident_id": incident_id,
                        "type": incident_type,
                        "severity": "WARN",
                        "paused_until": paused_until.isoformat() if paused_until else None,
                        "details": details,
                    },
                    f"automation.paused:{incident_id}",
                    conn=conn,
                )

        logger.warning(
            "automation_pause_opened",
            incident_id=incident_id,
            incident_type=incident_type,
            minutes=minutes,
        )
        await self._alert(
            f"WARN incident #{incident_id}: {incident_type}",
            "WARN",
            {**details, "paused_until": paused_until.isoformat() if paused_until else "manual resume"},
        )
        return PauseOutcome(incident_id=incident_id, paused_until=paused_until, minutes=minutes)

    async def resume(self, clear_quarantine: bool = False) -> int:
        """Lift the pause (and optionally quarantine); resolve open incidents."""
        await self._state.clear_pause()
        if clear_quarantine:
            await self._state.set_flag(QUARANTINE_FLAG, "false")
        resolved = await self._state.resolve_open_incidents()
        logger.info(
            "automation_resume_requested",
            quarantine_cleared=clear_quarantine,
            incidents_resolved=resolved,
        )
        return resolved

    async def _alert(self, title: str, severity: str, details: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        notifier = self._notifier
        await self._side_channel.publish(
            "telegram", lambda: notifier.send_alert(title, severity, details)
        )
