"""Outbox relay: at-least-once delivery of outbox events to a sink."""

import asyncio
import random
import traceback
from dataclasses import dataclass
from typing import Optional

import structlog
from prometheus_client import Counter, Gauge

from leadpilot.repositories.outbox import OutboxRepository
from leadpilot.services.alerts.telegram import AlertNotifier
from leadpilot.services.outbox.sinks import OutboxDeliveryError, OutboxSink
from leadpilot.services.side_channel import BestEffortSideChannel

logger = structlog.get_logger(__name__)

OUTBOX_DELIVERIES_TOTAL = Counter(
    "leadpilot_outbox_deliveries_total",
    "Outbox delivery attempts by outcome",
    ["outcome"],  # delivered, retry, permanent_failure
)
OUTBOX_PENDING = Gauge(
    "leadpilot_outbox_pending",
    "Undelivered outbox events at the last poll",
)


@dataclass
class RelayBatchResult:
    fetched: int = 0
    delivered: int = 0
    retried: int = 0
    permanent_failures: int = 0
    pending: int = 0
    backlog_alert: bool = False


def retry_delay_ms(attempts: int, timeout_ms: int) -> int:
    """max(1000, timeout) * 2^(attempts-1) + jitter(0..500)."""
    base = max(1000, timeout_ms)
    return base * (2 ** max(0, attempts - 1)) + random.randint(0, 500)


class OutboxRelay:
    def __init__(
        self,
        repo: OutboxRepository,
        sink: OutboxSink,
        batch_size: int = 100,
        max_retries: int = 8,
        timeout_ms: int = 10000,
        backlog_alert_threshold: int = 500,
        side_channel: Optional[BestEffortSideChannel] = None,
        notifier: Optional[AlertNotifier] = None,
    ):
        self._repo = repo
        self._sink = sink
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout_ms = timeout_ms
        self.backlog_alert_threshold = backlog_alert_threshold
        self._side_channel = side_channel or BestEffortSideChannel()
        self._notifier = notifier

    async def run_once(self) -> RelayBatchResult:
        """Deliver one batch of due events."""
        result = RelayBatchResult()
        events = await self._repo.fetch_pending(self.batch_size)
        result.fetched = len(events)

        for event in events:
            try:
                await self._sink.deliver(event)
            except Exception as e:
                # Any sink error counts against this event only
                if isinstance(e, OutboxDeliveryError):
                    error = str(e)
                else:
                    error = f"{type(e).__name__}: {e}"
                attempts = event.attempts + 1
                if attempts >= self.max_retries:
                    await self._repo.mark_permanent_failure(event.id, attempts, error)
                    result.permanent_failures += 1
                    OUTBOX_DELIVERIES_TOTAL.labels(outcome="permanent_failure").inc()
                    logger.warning(
                        "outbox_permanent_failure",
                        event_id=str(event.id),
                        idempotency_key=event.idempotency_key,
                        attempts=attempts,
                        error=error,
                    )
                else:
                    delay = retry_delay_ms(attempts, self.timeout_ms)
                    await self._repo.mark_retry(event.id, attempts, delay, error)
                    result.retried += 1
                    OUTBOX_DELIVERIES_TOTAL.labels(outcome="retry").inc()
                    logger.info(
                        "outbox_retry_scheduled",
                        event_id=str(event.id),
                        attempts=attempts,
                        delay_ms=delay,
                        error=error,
                    )
                continue

            await self._repo.mark_delivered(event.id)
            result.delivered += 1
            OUTBOX_DELIVERIES_TOTAL.labels(outcome="delivered").inc()

        result.pending = await self._repo.count_pending()
        OUTBOX_PENDING.set(result.pending)
        if result.pending > self.backlog_alert_threshold:
            result.backlog_alert = True
            await self._alert_backlog(result.pending)

        if result.fetched:
            logger.info(
                "outbox_batch_done",
                fetched=result.fetched,
                delivered=result.delivered,
                retried=result.retried,
                permanent_failures=result.permanent_failures,
                pending=result.pending,
            )
        return result

    async def run_forever(self, stop: asyncio.Event, poll_interval: float = 30.0) -> None:
        """Poll until ``stop`` is set. A full batch is followed immediately by the next."""
        logger.info("outbox_relay_started", batch_size=self.batch_size)
        while not stop.is_set():
            try:
                result = await self.run_once()
            except Exception as e:
                logger.error(
                    "outbox_relay_cycle_error", error=str(e), traceback=traceback.format_exc()
                )
                result = None
            if result is not None and result.fetched >= self.batch_size:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("outbox_relay_stopped")

    async def _alert_backlog(self, pending: int) -> None:
        logger.warning(
            "outbox_backlog_high", pending=pending, threshold=self.backlog_alert_threshold
        )
        if self._notifier is None:
            return
        notifier = self._notifier
        await self._side_channel.publish(
            "telegram",
            lambda: notifier.send_alert(
                "Outbox backlog high",
                "WARN",
                {"pending": pending, "threshold": self.backlog_alert_threshold},
            ),
        )
