"""Lead lifecycle state machine.

Every accepted transition writes, in one transaction: the new status and
milestone timestamp, an append-only lead event, and a ``lead.transition``
outbox event. Invalid or repeated transitions write nothing.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from leadpilot.jobs.errors import LeadNotFoundError
from leadpilot.repositories.leads import LeadRepository
from leadpilot.repositories.outbox import OutboxRepository
from leadpilot.services.leads.models import LeadStatus

logger = structlog.get_logger(__name__)

S = LeadStatus

ALLOWED_TRANSITIONS: dict[LeadStatus, frozenset[LeadStatus]] = {
    S.NEW: frozenset({S.READY_INVITE, S.SKIPPED, S.BLOCKED, S.REVIEW_REQUIRED, S.DEAD}),
    S.READY_INVITE: frozenset({S.INVITED, S.SKIPPED, S.BLOCKED, S.REVIEW_REQUIRED, S.DEAD}),
    S.INVITED: frozenset({S.ACCEPTED, S.WITHDRAWN, S.BLOCKED, S.REVIEW_REQUIRED, S.DEAD}),
    S.ACCEPTED: frozenset({S.READY_MESSAGE, S.REPLIED, S.BLOCKED, S.REVIEW_REQUIRED, S.DEAD}),
    S.READY_MESSAGE: frozenset({S.MESSAGED, S.REPLIED, S.BLOCKED, S.REVIEW_REQUIRED, S.DEAD}),
    S.MESSAGED: frozenset({S.REPLIED, S.BLOCKED, S.REVIEW_REQUIRED, S.DEAD}),
    S.REPLIED: frozenset({S.BLOCKED}),
    S.WITHDRAWN: frozenset({S.READY_INVITE, S.BLOCKED, S.DEAD}),
    S.REVIEW_REQUIRED: frozenset(
        {S.READY_INVITE, S.INVITED, S.ACCEPTED, S.READY_MESSAGE, S.SKIPPED, S.BLOCKED, S.DEAD}
    ),
    S.SKIPPED: frozenset(),
    S.BLOCKED: frozenset(),
    S.DEAD: frozenset(),
}


def is_valid_transition(from_status: LeadStatus, to_status: LeadStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


@dataclass
class TransitionResult:
    lead_id: int
    from_status: LeadStatus
    to_status: LeadStatus
    applied: bool


def transition_key(
    topic: str, lead_id: int, event_id: int, from_status: LeadStatus, to_status: LeadStatus
) -> str:
    """One key per lead event, so a lead passing the same edge twice yields two events."""
    return f"{topic}:{lead_id}:{event_id}:{from_status.value}:{to_status.value}"


class LeadStateService:
    def __init__(self, pool, leads: Optional[LeadRepository] = None, outbox: Optional[OutboxRepository] = None):
        self._pool = pool
        self._leads = leads or LeadRepository(pool)
        self._outbox = outbox or OutboxRepository(pool)

    async def transition(
        self,
        lead_id: int,
        to_status: LeadStatus,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """Move a lead along the transition graph.

        Returns a result with ``applied=False`` when the move is invalid or
        a no-op; nothing is written in that case.

        Raises:
            LeadNotFoundError: if the lead does not exist
        """
        metadata = metadata or {}
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                lead = await self._leads.get_for_update(conn, lead_id)
                if lead is None:
                    raise LeadNotFoundError(lead_id)

                from_status = lead.status
                if not is_valid_transition(from_status, to_status):
                    logger.info(
                        "lead_transition_ignored",
                        lead_id=lead_id,
                        from_status=from_status.value,
                        to_status=to_status.value,
                        reason=reason,
                    )
                    return TransitionResult(lead_id, from_status, from_status, applied=False)

                await self._leads.update_status(conn, lead_id, to_status, reason)
                event_id = await self._leads.append_event(
                    conn, lead_id, from_status, to_status, reason, metadata
                )
                await self._outbox.push(
                    "lead.transition",
                    {
                        "lead_id": lead_id,
                        "event_id": event_id,
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                        "reason": reason,
                        "metadata": metadata,
                    },
                    transition_key("lead.transition", lead_id, event_id, from_status, to_status),
                    conn=conn,
                )

        logger.info(
            "lead_transitioned",
            lead_id=lead_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        return TransitionResult(lead_id, from_status, to_status, applied=True)

    async def reconcile(
        self,
        lead_id: int,
        to_status: LeadStatus,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """Force a lead's status to match an externally observed state.

        Bypasses the transition table; still audited with an event flagged
        ``reconcile`` and a ``lead.reconciled`` outbox event.
        """
        metadata = {**(metadata or {}), "reconcile": True}
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                lead = await self._leads.get_for_update(conn, lead_id)
                if lead is None:
                    raise LeadNotFoundError(lead_id)

                from_status = lead.status
                if from_status == to_status:
                    return TransitionResult(lead_id, from_status, from_status, applied=False)

                await self._leads.update_status(conn, lead_id, to_status, reason)
                event_id = await self._leads.append_event(
                    conn, lead_id, from_status, to_status, reason, metadata
                )
                await self._outbox.push(
                    "lead.reconciled",
                    {
                        "lead_id": lead_id,
                        "event_id": event_id,
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                        "reason": reason,
                        "metadata": metadata,
                    },
                    transition_key("lead.reconciled", lead_id, event_id, from_status, to_status),
                    conn=conn,
                )

        logger.warning(
            "lead_reconciled",
            lead_id=lead_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        return TransitionResult(lead_id, from_status, to_status, applied=True)
