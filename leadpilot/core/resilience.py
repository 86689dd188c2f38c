"""Retry helpers for transient database failures.

Usage:
    from leadpilot.core.resilience import with_db_retry

    ok = await with_db_retry(pool, lambda conn: conn.fetchval(query, key))
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional

import asyncpg
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay in seconds before retry number ``attempt`` (0-indexed)."""
    delay = config.base_delay_seconds * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay_seconds)
    return delay + delay * config.jitter_factor * random.random()


TRANSIENT_SQLSTATES = {
    "08000",  # connection_exception
    "08003",  # connection_does_not_exist
    "08006",  # connection_failure
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "57P01",  # admin_shutdown
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
}


def is_transient_db_error(error: Exception) -> bool:
    """Check if database error is transient and worth retrying.

    Returns True for connection errors, timeouts, and pool exhaustion.
    Returns False for query errors, constraint violations, etc.
    """
    if isinstance(
        error,
        (
            asyncpg.InterfaceError,
            asyncpg.InternalClientError,
            asyncpg.TooManyConnectionsError,
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in TRANSIENT_SQLSTATES

    return False


async def with_db_retry(
    pool,
    operation: Callable[[asyncpg.Connection], Any],
    config: Optional[RetryConfig] = None,
) -> Any:
    """Execute database operation with retry on transient failures.

    Args:
        pool: asyncpg connection pool
        operation: Async callable that takes a connection and returns result
        config: Optional retry configuration

    Raises:
        Exception: If all retries exhausted or non-transient error
    """
    if config is None:
        config = RetryConfig()

    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            async with pool.acquire() as conn:
                return await operation(conn)
        except Exception as e:
            last_error = e
            if not is_transient_db_error(e):
                raise

            delay = calculate_backoff(attempt, config)
            logger.warning(
                "db_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            if attempt < config.max_attempts - 1:
                await asyncio.sleep(delay)

    logger.error("db_retries_exhausted", attempts=config.max_attempts, error=str(last_error))
    raise last_error  # type: ignore
