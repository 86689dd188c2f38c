"""Action executor result contract."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class WorkerError:
    message: str
    lead_id: Optional[int] = None


@dataclass
class WorkerResult:
    """What an action handler reports back to the runner."""

    success: bool
    processed_count: int = 0
    errors: list[WorkerError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


def worker_result(processed_count: int, errors: Optional[list[WorkerError]] = None) -> WorkerResult:
    """Build a result; success means no reported errors."""
    errors = errors or []
    return WorkerResult(success=not errors, processed_count=processed_count, errors=errors)
