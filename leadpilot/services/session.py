"""Interfaces of the external browser session collaborator."""

from typing import Protocol

from leadpilot.accounts import AccountProfile


class Session(Protocol):
    """An authenticated browsing session bound to one account."""

    async def is_authenticated(self) -> bool:
        ...

    async def reclaim_resources(self) -> None:
        """Periodic maintenance (free tabs, memory). Must be non-fatal to skip."""
        ...

    async def close(self) -> None:
        ...


class SessionFactory(Protocol):
    async def open(self, account: AccountProfile) -> Session:
        ...
