"""Typed job payloads, validated when a job is dispatched."""

from datetime import date
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from leadpilot.jobs.errors import PayloadDecodeError
from leadpilot.jobs.types import JobType


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class InvitePayload(_Payload):
    lead_id: int = Field(..., alias="leadId", gt=0)
    local_date: date = Field(..., alias="localDate")


class AcceptanceCheckPayload(_Payload):
    lead_id: int = Field(..., alias="leadId", gt=0)


class MessagePayload(_Payload):
    lead_id: int = Field(..., alias="leadId", gt=0)
    accepted_at_date: date = Field(..., alias="acceptedAtDate")


class HygienePayload(_Payload):
    account_id: str = Field(..., alias="accountId", min_length=1)


JobPayload = Union[InvitePayload, AcceptanceCheckPayload, MessagePayload, HygienePayload]

PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.INVITE: InvitePayload,
    JobType.ACCEPTANCE_CHECK: AcceptanceCheckPayload,
    JobType.MESSAGE: MessagePayload,
    JobType.HYGIENE: HygienePayload,
}


def parse_payload(job_type: JobType, raw: dict[str, Any]) -> JobPayload:
    """Validate a raw payload against its job type.

    Raises:
        PayloadDecodeError: if the payload does not fit the schema
    """
    model = PAYLOAD_MODELS[job_type]
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise PayloadDecodeError(job_type.value, str(e.errors()[0]["msg"])) from e


def lead_id_of(raw: dict[str, Any]) -> Optional[int]:
    """Best-effort lead id lookup on an unvalidated payload."""
    value = raw.get("leadId", raw.get("lead_id"))
    if isinstance(value, int) and value > 0:
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
