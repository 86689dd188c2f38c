"""Tests for the runtime lock repository."""

from datetime import datetime, timedelta, timezone

import pytest

from leadpilot.repositories.runtime_locks import RuntimeLockRepository


def lock_row(owner_id, previous_owner=None):
    now = datetime.now(timezone.utc)
    row = {
        "lock_key": "workflow.runner",
        "owner_id": owner_id,
        "acquired_at": now,
        "heartbeat_at": now,
        "expires_at": now + timedelta(seconds=120),
        "metadata": '{"pid": 1}',
        "previous_owner": previous_owner,
    }
    return row


class TestAcquire:
    @pytest.mark.asyncio
    async def test_fresh_acquire(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = lock_row("me")
        repo = RuntimeLockRepository(mock_pool)

        result = await repo.acquire("workflow.runner", "me", 120, {"pid": 1})

        assert result.acquired is True
        assert result.lock.owner_id == "me"
        assert result.lock.metadata == {"pid": 1}
        assert result.stolen_from is None
        sql = mock_conn.fetchrow.call_args.args[0]
        assert "ON CONFLICT (lock_key) DO UPDATE" in sql
        assert "runtime_locks.expires_at <= now()" in sql

    @pytest.mark.asyncio
    async def test_renewal_by_same_owner_is_not_a_steal(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = lock_row("me", previous_owner="me")
        repo = RuntimeLockRepository(mock_pool)

        result = await repo.acquire("workflow.runner", "me", 120)

        assert result.acquired is True
        assert result.stolen_from is None

    @pytest.mark.asyncio
    async def test_expired_owner_is_reported_as_stolen(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = lock_row("me", previous_owner="crashed:host:9:aaaa")
        repo = RuntimeLockRepository(mock_pool)

        result = await repo.acquire("workflow.runner", "me", 120)

        assert result.acquired is True
        assert result.stolen_from == "crashed:host:9:aaaa"

    @pytest.mark.asyncio
    async def test_live_holder_blocks(self, mock_pool, mock_conn):
        mock_conn.fetchrow.side_effect = [None, lock_row("other")]
        repo = RuntimeLockRepository(mock_pool)

        result = await repo.acquire("workflow.runner", "me", 120)

        assert result.acquired is False
        assert result.lock.owner_id == "other"


class TestHeartbeatAndRelease:
    @pytest.mark.asyncio
    async def test_heartbeat_by_owner(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = {"lock_key": "workflow.runner"}
        repo = RuntimeLockRepository(mock_pool)

        assert await repo.heartbeat("workflow.runner", "me", 120) is True
        sql, *params = mock_conn.fetchrow.call_args.args
        assert "owner_id = $2" in sql
        assert params == ["workflow.runner", "me", 120]

    @pytest.mark.asyncio
    async def test_heartbeat_after_steal_fails(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = None
        repo = RuntimeLockRepository(mock_pool)

        assert await repo.heartbeat("workflow.runner", "me", 120) is False

    @pytest.mark.asyncio
    async def test_release_only_by_owner(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = None
        repo = RuntimeLockRepository(mock_pool)

        assert await repo.release("workflow.runner", "not-me") is False
        assert "DELETE FROM runtime_locks" in mock_conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_get_missing_lock(self, mock_pool, mock_conn):
        mock_conn.fetchrow.return_value = None
        repo = RuntimeLockRepository(mock_pool)

        assert await repo.get("workflow.runner") is None
