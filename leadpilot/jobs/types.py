"""Job system type definitions."""

from enum import Enum


class JobType(str, Enum):
    """Job types executed by the runner."""

    INVITE = "INVITE"
    ACCEPTANCE_CHECK = "ACCEPTANCE_CHECK"
    MESSAGE = "MESSAGE"
    HYGIENE = "HYGIENE"

    @property
    def affects_lead(self) -> bool:
        """Dead-lettering this type parks the lead for review."""
        return self in LEAD_AFFECTING_TYPES


LEAD_AFFECTING_TYPES = frozenset(
    {JobType.INVITE, JobType.MESSAGE, JobType.ACCEPTANCE_CHECK}
)


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    DEAD_LETTER = "DEAD_LETTER"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no further automatic change)."""
        return self in (JobStatus.SUCCEEDED, JobStatus.DEAD_LETTER)
