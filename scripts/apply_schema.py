#!/usr/bin/env python3
"""Apply the leadpilot schema to DATABASE_URL."""
import asyncio
import os

import asyncpg

from leadpilot.core.schema import SCHEMA_SQL

TABLES = (
    "jobs",
    "job_attempts",
    "leads",
    "lead_events",
    "runtime_locks",
    "outbox_events",
    "daily_stats",
    "runtime_flags",
    "automation_pause",
    "incidents",
)


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(SCHEMA_SQL)
        print("Schema applied")

        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ANY($1)",
            list(TABLES),
        )
        print(f"{count}/{len(TABLES)} tables present")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main())
