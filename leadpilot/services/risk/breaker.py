"""Process-local consecutive failure breaker."""

import structlog

logger = structlog.get_logger(__name__)


class ConsecutiveFailureBreaker:
    """Counts failures in a row within one pass.

    Any success resets the count. The persisted per-job attempt counter is
    independent of this one.
    """

    def __init__(self, threshold: int):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.consecutive_failures = 0

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> bool:
        """Count a failure. Returns True when the threshold is reached."""
        self.consecutive_failures += 1
        tripped = self.consecutive_failures >= self.threshold
        if tripped:
            logger.warning(
                "consecutive_failure_breaker_tripped",
                consecutive_failures=self.consecutive_failures,
                threshold=self.threshold,
            )
        return tripped

    def reset(self) -> None:
        self.consecutive_failures = 0
