"""Runtime lock lease: acquire, keep alive with heartbeats, release.

Only one runner process may drive automation at a time. The lease is
renewed in the background while work runs; once a heartbeat finds the
lock gone (stolen after expiry or deleted) the lease is marked lost and
every later ``ensure_held()`` raises ``LockLostError``.
"""

import asyncio
import os
import socket
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Optional, TypeVar

import structlog
from prometheus_client import Counter

from leadpilot.core.resilience import is_transient_db_error
from leadpilot.jobs.errors import LockHeldError, LockLostError
from leadpilot.repositories.runtime_locks import LockAcquireResult, RuntimeLockRepository

logger = structlog.get_logger(__name__)

T = TypeVar("T")

LOCK_LOST_TOTAL = Counter(
    "leadpilot_runtime_lock_lost_total",
    "Runtime lock leases lost while held",
    ["lock_key"],
)


def generate_owner_id(command: str = "runner") -> str:
    """Owner id: command:hostname:pid:suffix."""
    return f"{command}:{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LockLease:
    def __init__(
        self,
        repo: RuntimeLockRepository,
        lock_key: str,
        owner_id: Optional[str] = None,
        ttl_seconds: int = 120,
        heartbeat_seconds: float = 30,
        metadata: Optional[dict[str, Any]] = None,
    ):
        if heartbeat_seconds * 2 > ttl_seconds:
            raise ValueError("heartbeat cadence must be at most half of the TTL")
        self._repo = repo
        self.lock_key = lock_key
        self.owner_id = owner_id or generate_owner_id()
        self.ttl_seconds = ttl_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._metadata = metadata or {}
        self._held = False
        self._lost = False
        self._last_renewed = 0.0
        self._lost_event = asyncio.Event()

    @property
    def held(self) -> bool:
        return self._held and not self._lost

    async def acquire(self) -> LockAcquireResult:
        """Acquire the lock.

        Raises:
            LockHeldError: if another live owner holds it
        """
        result = await self._repo.acquire(
            self.lock_key,
            self.owner_id,
            self.ttl_seconds,
            {**self._metadata, "pid": os.getpid(), "host": socket.gethostname()},
        )
        if not result.acquired:
            raise LockHeldError(self.lock_key, result.lock.owner_id if result.lock else None)
        self._held = True
        self._lost = False
        self._lost_event.clear()
        self._last_renewed = time.monotonic()
        return result

    async def heartbeat(self) -> bool:
        """Renew the lease. Returns False once the lease is lost.

        A transient database error does not lose the lease by itself; it
        is lost when renewals keep failing past the TTL.
        """
        if self._lost:
            return False
        try:
            renewed = await self._repo.heartbeat(self.lock_key, self.owner_id, self.ttl_seconds)
        except Exception as e:
            if not is_transient_db_error(e):
                raise
            logger.warning("runtime_lock_heartbeat_error", lock_key=self.lock_key, error=str(e))
            if time.monotonic() - self._last_renewed < self.ttl_seconds:
                return True
            renewed = False

        if renewed:
            self._last_renewed = time.monotonic()
            return True

        self._mark_lost()
        return False

    def _mark_lost(self) -> None:
        self._lost = True
        self._lost_event.set()
        LOCK_LOST_TOTAL.labels(lock_key=self.lock_key).inc()
        logger.error("runtime_lock_lost", lock_key=self.lock_key, owner_id=self.owner_id)

    async def guard(self, coro: Awaitable[T]) -> T:
        """Await ``coro`` unless the lease is lost first.

        On loss the work is cancelled and LockLostError raised, so an
        action never outlives the lock that authorized it.
        """
        self.ensure_held()
        work = asyncio.ensure_future(coro)
        lost = asyncio.ensure_future(self._lost_event.wait())
        try:
            await asyncio.wait({work, lost}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            lost.cancel()

        if work.done():
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise LockLostError(self.lock_key, self.owner_id)

    def ensure_held(self) -> None:
        """Raise LockLostError unless the lease is still ours."""
        if not self.held:
            raise LockLostError(self.lock_key, self.owner_id)

    async def release(self) -> bool:
        if not self._held:
            return False
        self._held = False
        if self._lost:
            return False
        return await self._repo.release(self.lock_key, self.owner_id)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                renewed = await self.heartbeat()
            except Exception as e:
                # Without renewals the lease cannot be trusted any more
                logger.error("runtime_lock_heartbeat_failed", lock_key=self.lock_key, error=str(e))
                self._mark_lost()
                return
            if not renewed:
                return

    @asynccontextmanager
    async def keepalive(self) -> AsyncIterator["LockLease"]:
        """Heartbeat in the background for the duration of the block.

        Raises LockLostError on exit if the lease was lost meanwhile.
        """
        self.ensure_held()
        task = asyncio.create_task(self._heartbeat_loop())
        try:
            yield self
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.ensure_held()

    async def sleep(self, seconds: float, stop: Optional[asyncio.Event] = None) -> None:
        """Sleep in heartbeat-sized chunks, renewing the lease between them.

        Returns as soon as ``stop`` is set.
        """
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or (stop is not None and stop.is_set()):
                return
            chunk = min(self.heartbeat_seconds, remaining)
            if stop is None:
                await asyncio.sleep(chunk)
            else:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=chunk)
                    return
                except asyncio.TimeoutError:
                    pass
            if not await self.heartbeat():
                self.ensure_held()
