"""Delivery sinks for outbox events."""

import hashlib
import hmac
import json
from typing import Optional, Protocol
from urllib.parse import quote

import httpx
import structlog

from leadpilot.repositories.outbox import OutboxEvent

logger = structlog.get_logger(__name__)


class OutboxDeliveryError(Exception):
    """Raised when a sink could not deliver an event."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OutboxSink(Protocol):
    """Receives events at least once; must dedupe on idempotency_key."""

    async def deliver(self, event: OutboxEvent) -> None:
        ...


def sign_body(body: str, secret: str) -> str:
    """``sha256=<hex hmac>`` of the exact request body."""
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookOutboxSink:
    """POSTs each event as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._client = client

    def build_request(self, event: OutboxEvent) -> tuple[str, dict[str, str]]:
        """JSON body plus headers. Header values are percent-encoded to stay ASCII."""
        body = json.dumps(
            {
                "topic": event.topic,
                "payload": event.payload,
                "idempotency_key": event.idempotency_key,
                "created_at": event.created_at.isoformat(),
            },
            default=str,
        )
        headers = {
            "content-type": "application/json",
            "x-idempotency-key": quote(event.idempotency_key, safe=":._-"),
            "x-event-topic": quote(event.topic, safe=":._-"),
        }
        if self.secret:
            headers["x-signature-sha256"] = sign_body(body, self.secret)
        return body, headers

    async def deliver(self, event: OutboxEvent) -> None:
        body, headers = self.build_request(event)
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise OutboxDeliveryError(f"{type(e).__name__}: {e}") from e

        if resp.status_code >= 300:
            raise OutboxDeliveryError(
                f"HTTP_{resp.status_code}:{resp.text[:500]}", status_code=resp.status_code
            )
        logger.debug("outbox_event_delivered", event_id=str(event.id), topic=event.topic)
