"""Root conftest for test suite.

Auto-skips database tests unless a PostgreSQL URL is provided.
Run explicitly with: TEST_DATABASE_URL=postgresql://... pytest tests/db
"""

import os

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip requires_db tests when no database is configured."""
    if os.getenv("TEST_DATABASE_URL"):
        return

    skip_db = pytest.mark.skip(
        reason="database tests need TEST_DATABASE_URL pointing at a disposable PostgreSQL"
    )
    for item in items:
        if "requires_db" in item.keywords:
            item.add_marker(skip_db)
