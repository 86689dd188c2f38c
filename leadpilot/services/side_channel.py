"""Best-effort side channel for notifications and external mirrors.

Side effects published here are secondary: a failure is logged and
counted, but never propagates into, or stalls, the caller's state change.
"""

import asyncio
from collections import Counter as FailureTally
from typing import Any, Awaitable, Callable

import structlog
from prometheus_client import Counter

logger = structlog.get_logger(__name__)

SIDE_CHANNEL_PUBLISHED_TOTAL = Counter(
    "leadpilot_side_channel_published_total",
    "Side-channel publications by outcome",
    ["channel", "outcome"],  # ok, failed, timeout
)


class BestEffortSideChannel:
    """Runs secondary coroutines under a timeout and records failures."""

    def __init__(self, timeout_seconds: float = 10.0):
        self._timeout = timeout_seconds
        self.failures: FailureTally[str] = FailureTally()

    async def publish(
        self, channel: str, coro_factory: Callable[[], Awaitable[Any]]
    ) -> bool:
        """Run ``coro_factory()``; True when it completed without error."""
        try:
            await asyncio.wait_for(coro_factory(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self.failures[channel] += 1
            SIDE_CHANNEL_PUBLISHED_TOTAL.labels(channel=channel, outcome="timeout").inc()
            logger.warning("side_channel_timeout", channel=channel, timeout=self._timeout)
            return False
        except Exception as e:
            self.failures[channel] += 1
            SIDE_CHANNEL_PUBLISHED_TOTAL.labels(channel=channel, outcome="failed").inc()
            logger.warning(
                "side_channel_failed",
                channel=channel,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        SIDE_CHANNEL_PUBLISHED_TOTAL.labels(channel=channel, outcome="ok").inc()
        return True
