"""Account profiles the runner iterates over."""

from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_ACCOUNT_ID = "default"


class AccountProfile(BaseModel):
    """One automation account: its own session and job partition."""

    id: str = Field(..., min_length=1)
    session_dir: Optional[str] = None
    proxy: Optional[str] = None


def include_legacy_queue(index: int, account: AccountProfile, account_count: int) -> bool:
    """Whether this account also drains jobs enqueued under the default id.

    Jobs created before partitioning carry account_id 'default'. With several
    accounts configured, the first one adopts them so they are never stranded.
    """
    return account_count > 1 and index == 0 and account.id != DEFAULT_ACCOUNT_ID
