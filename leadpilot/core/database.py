"""asyncpg pool lifecycle.

JSONB values travel as text: repositories serialize with ``to_jsonb`` and
parse with ``ensure_json``.
"""

import asyncpg
import structlog

from leadpilot.config import Settings

logger = structlog.get_logger(__name__)


async def create_pool(settings: Settings) -> asyncpg.Pool:
    """Create the shared connection pool."""
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=60,
    )
    logger.info(
        "db_pool_created",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool
