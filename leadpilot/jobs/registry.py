"""Action handler registry."""

from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from leadpilot.jobs.context import WorkerContext
from leadpilot.jobs.result import WorkerResult
from leadpilot.jobs.types import JobType
from leadpilot.services.session import SessionFactory

# Handler signature: async def handler(payload, ctx: WorkerContext) -> WorkerResult
ActionHandler = Callable[[Any, WorkerContext], Coroutine[Any, Any, WorkerResult]]

# Follow-up phase signature: async def phase(ctx: WorkerContext) -> WorkerResult
FollowUpPhase = Callable[[WorkerContext], Coroutine[Any, Any, WorkerResult]]


class ActionRegistry:
    """Registry mapping job types to the action executor's handlers."""

    def __init__(self):
        self._handlers: dict[JobType, ActionHandler] = {}

    def register(self, job_type: JobType, handler: ActionHandler) -> None:
        """Register a handler for a job type."""
        self._handlers[job_type] = handler

    def get_handler(self, job_type: JobType) -> ActionHandler:
        """Get the handler for a job type. Raises KeyError if not found."""
        if job_type not in self._handlers:
            raise KeyError(f"No handler registered for job type: {job_type.value}")
        return self._handlers[job_type]

    def handler(self, job_type: JobType) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator to register a handler."""

        def decorator(fn: ActionHandler) -> ActionHandler:
            self.register(job_type, fn)
            return fn

        return decorator

    @property
    def job_types(self) -> list[JobType]:
        return list(self._handlers)

    def __contains__(self, job_type: JobType) -> bool:
        return job_type in self._handlers


@dataclass
class ExecutorBundle:
    """What an executor factory hands to the runner."""

    registry: ActionRegistry
    session_factory: SessionFactory
    follow_up: Optional[FollowUpPhase] = None
