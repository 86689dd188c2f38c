"""Lead domain models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class LeadStatus(str, Enum):
    NEW = "NEW"
    READY_INVITE = "READY_INVITE"
    INVITED = "INVITED"
    ACCEPTED = "ACCEPTED"
    READY_MESSAGE = "READY_MESSAGE"
    MESSAGED = "MESSAGED"
    REPLIED = "REPLIED"
    WITHDRAWN = "WITHDRAWN"
    BLOCKED = "BLOCKED"
    SKIPPED = "SKIPPED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    DEAD = "DEAD"

    @classmethod
    def parse(cls, value: str) -> "LeadStatus":
        """Parse a stored status; legacy PENDING maps to READY_INVITE."""
        if value == "PENDING":
            return cls.READY_INVITE
        return cls(value)


@dataclass
class Lead:
    id: int
    external_url: str
    status: LeadStatus
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    account_name: Optional[str] = None
    list_name: str = "default"
    invited_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    messaged_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    last_error: Optional[str] = None
    blocked_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class LeadEvent:
    lead_id: int
    from_status: LeadStatus
    to_status: LeadStatus
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[int] = None
