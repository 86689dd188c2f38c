"""Per-job execution context handed to action handlers."""

from dataclasses import dataclass
from datetime import date
from typing import Any

from leadpilot.accounts import AccountProfile
from leadpilot.repositories.runtime_state import RuntimeFlags


@dataclass
class WorkerContext:
    account: AccountProfile
    session: Any
    flags: RuntimeFlags
    local_date: date
    dry_run: bool = False
