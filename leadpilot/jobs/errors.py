"""Exceptions raised across the job pipeline."""

from typing import Optional


class ChallengeDetectedError(Exception):
    """The platform presented a challenge (captcha, verification wall).

    Never retried: the runner quarantines the account and stops.
    """


class RetryableWorkerError(Exception):
    """A worker failure tagged with a machine-readable code."""

    def __init__(self, message: str, code: str = "RETRYABLE"):
        super().__init__(message)
        self.code = code


class PayloadDecodeError(Exception):
    """A job payload does not match the schema of its job type."""

    def __init__(self, job_type: str, message: str):
        super().__init__(f"Invalid payload for {job_type}: {message}")
        self.job_type = job_type


class LockLostError(Exception):
    """The runtime lock was lost or stolen while work was in progress."""

    def __init__(self, lock_key: str, owner_id: str, holder: Optional[str] = None):
        detail = f"Runtime lock '{lock_key}' lost by {owner_id}"
        if holder:
            detail += f" (now held by {holder})"
        super().__init__(detail)
        self.lock_key = lock_key
        self.owner_id = owner_id
        self.holder = holder


class LockHeldError(Exception):
    """Another live owner holds the runtime lock."""

    def __init__(self, lock_key: str, holder: Optional[str]):
        super().__init__(f"Runtime lock '{lock_key}' is held by {holder or 'unknown'}")
        self.lock_key = lock_key
        self.holder = holder


class LeadNotFoundError(Exception):
    """Transition requested for a lead that does not exist."""

    def __init__(self, lead_id: int):
        super().__init__(f"Lead {lead_id} not found")
        self.lead_id = lead_id


def error_code_of(exc: BaseException) -> str:
    """Stable code recorded on job attempts."""
    if isinstance(exc, RetryableWorkerError):
        return exc.code
    if isinstance(exc, ChallengeDetectedError):
        return "CHALLENGE_DETECTED"
    if isinstance(exc, PayloadDecodeError):
        return "PAYLOAD_INVALID"
    return "UNKNOWN"
