"""Tests for the outbox relay and its webhook sink."""

import asyncio
import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import httpx
import pytest

from leadpilot.repositories.outbox import OutboxEvent, OutboxRepository
from leadpilot.services.alerts.telegram import TelegramNotifier
from leadpilot.services.outbox.relay import OutboxRelay, retry_delay_ms
from leadpilot.services.outbox.sinks import (
    OutboxDeliveryError,
    WebhookOutboxSink,
    sign_body,
)
from leadpilot.services.side_channel import BestEffortSideChannel


def make_event(attempts=0, topic="lead.transition"):
    return OutboxEvent(
        id=uuid4(),
        topic=topic,
        payload={"lead_id": 42},
        idempotency_key=f"{topic}:{uuid4()}",
        attempts=attempts,
        next_retry_at=datetime.now(timezone.utc),
        created_at=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
    )


class RecordingSink:
    def __init__(self, fail_keys=()):
        self.fail_keys = set(fail_keys)
        self.delivered = []

    async def deliver(self, event):
        if event.idempotency_key in self.fail_keys:
            raise OutboxDeliveryError("HTTP_503:unavailable", status_code=503)
        self.delivered.append(event)


class BrokenSink:
    async def deliver(self, event):
        raise RuntimeError("sink bug")


@pytest.fixture
def repo():
    repo = MagicMock(spec=OutboxRepository)
    repo.fetch_pending.return_value = []
    repo.count_pending.return_value = 0
    return repo


class TestRetryDelay:
    def test_floor_is_one_second(self):
        for _ in range(20):
            assert 1000 <= retry_delay_ms(1, 200) <= 1500

    def test_doubles_per_attempt(self):
        for _ in range(20):
            assert 40000 <= retry_delay_ms(3, 10000) <= 40500


class TestOutboxRelay:
    @pytest.mark.asyncio
    async def test_delivers_batch(self, repo):
        events = [make_event(), make_event()]
        repo.fetch_pending.return_value = events
        sink = RecordingSink()
        relay = OutboxRelay(repo, sink)

        result = await relay.run_once()

        assert result.delivered == 2
        assert sink.delivered == events
        assert repo.mark_delivered.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, repo):
        event = make_event(attempts=2)
        repo.fetch_pending.return_value = [event]
        relay = OutboxRelay(repo, RecordingSink(fail_keys=[event.idempotency_key]))

        result = await relay.run_once()

        assert result.retried == 1
        event_id, attempts, delay, error = repo.mark_retry.call_args.args
        assert event_id == event.id
        assert attempts == 3
        assert delay >= 40000
        assert error.startswith("HTTP_503")
        repo.mark_delivered.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_max_retries_marks_permanent_failure(self, repo):
        event = make_event(attempts=7)
        repo.fetch_pending.return_value = [event]
        relay = OutboxRelay(repo, RecordingSink(fail_keys=[event.idempotency_key]), max_retries=8)

        result = await relay.run_once()

        assert result.permanent_failures == 1
        repo.mark_permanent_failure.assert_awaited_once_with(event.id, 8, "HTTP_503:unavailable")
        repo.mark_retry.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_batch(self, repo):
        bad, good = make_event(), make_event()
        repo.fetch_pending.return_value = [bad, good]
        sink = RecordingSink(fail_keys=[bad.idempotency_key])
        relay = OutboxRelay(repo, sink)

        result = await relay.run_once()

        assert (result.delivered, result.retried) == (1, 1)
        assert sink.delivered == [good]

    @pytest.mark.asyncio
    async def test_unexpected_sink_error_schedules_retry(self, repo):
        events = [make_event(), make_event(attempts=1)]
        repo.fetch_pending.return_value = events
        relay = OutboxRelay(repo, BrokenSink())

        result = await relay.run_once()

        assert result.retried == 2
        assert [c.args[1] for c in repo.mark_retry.call_args_list] == [1, 2]
        assert repo.mark_retry.call_args.args[3] == "RuntimeError: sink bug"
        repo.mark_delivered.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_sink_error_at_max_retries_is_permanent(self, repo):
        event = make_event(attempts=7)
        repo.fetch_pending.return_value = [event]
        relay = OutboxRelay(repo, BrokenSink(), max_retries=8)

        result = await relay.run_once()

        assert result.permanent_failures == 1
        repo.mark_permanent_failure.assert_awaited_once_with(
            event.id, 8, "RuntimeError: sink bug"
        )

    @pytest.mark.asyncio
    async def test_backlog_alert(self, repo):
        repo.count_pending.return_value = 501
        notifier = MagicMock(spec=TelegramNotifier)
        relay = OutboxRelay(
            repo,
            RecordingSink(),
            backlog_alert_threshold=500,
            side_channel=BestEffortSideChannel(1),
            notifier=notifier,
        )

        result = await relay.run_once()

        assert result.backlog_alert is True
        assert notifier.send_alert.call_args.args[2]["pending"] == 501

    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(self, repo):
        relay = OutboxRelay(repo, RecordingSink())
        stop = asyncio.Event()

        task = asyncio.create_task(relay.run_forever(stop, poll_interval=0.01))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert repo.fetch_pending.await_count >= 1

    @pytest.mark.asyncio
    async def test_run_forever_survives_cycle_error(self, repo):
        stop = asyncio.Event()
        calls = []

        async def fetch_pending(limit):
            calls.append(limit)
            if len(calls) == 1:
                raise ConnectionError("connection reset")
            stop.set()
            return []

        repo.fetch_pending.side_effect = fetch_pending
        relay = OutboxRelay(repo, RecordingSink())

        await asyncio.wait_for(relay.run_forever(stop, poll_interval=0.01), timeout=1)

        assert len(calls) == 2


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestWebhookOutboxSink:
    def test_signature_matches_body(self):
        sink = WebhookOutboxSink("https://hooks.example.com/outbox", secret="s3cret")
        body, headers = sink.build_request(make_event())

        expected = hmac.new(b"s3cret", body.encode(), hashlib.sha256).hexdigest()
        assert headers["x-signature-sha256"] == f"sha256={expected}"
        assert sign_body(body, "s3cret") == headers["x-signature-sha256"]

    def test_no_signature_without_secret(self):
        sink = WebhookOutboxSink("https://hooks.example.com/outbox")
        _, headers = sink.build_request(make_event())
        assert "x-signature-sha256" not in headers

    @pytest.mark.asyncio
    async def test_posts_event(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["x-idempotency-key"]
            return httpx.Response(200)

        event = make_event()
        sink = WebhookOutboxSink("https://hooks.example.com/outbox", client=mock_client(handler))

        await sink.deliver(event)

        assert seen["body"]["topic"] == "lead.transition"
        assert seen["body"]["payload"] == {"lead_id": 42}
        assert seen["key"] == event.idempotency_key

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self):
        sink = WebhookOutboxSink(
            "https://hooks.example.com/outbox",
            client=mock_client(lambda request: httpx.Response(500, text="boom")),
        )

        with pytest.raises(OutboxDeliveryError) as exc:
            await sink.deliver(make_event())

        assert exc.value.status_code == 500
        assert str(exc.value) == "HTTP_500:boom"

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        sink = WebhookOutboxSink("https://hooks.example.com/outbox", client=mock_client(handler))

        with pytest.raises(OutboxDeliveryError, match="ConnectError"):
            await sink.deliver(make_event())

    @pytest.mark.asyncio
    async def test_non_ascii_key_is_percent_encoded(self):
        seen = {}

        def handler(request):
            seen["header"] = request.headers["x-idempotency-key"]
            seen["body_key"] = json.loads(request.content)["idempotency_key"]
            return httpx.Response(200)

        event = make_event()
        event.idempotency_key = "lead.transition:1:9:NEW:READY_INVITE:importé"
        sink = WebhookOutboxSink("https://hooks.example.com/outbox", client=mock_client(handler))

        await sink.deliver(event)

        assert seen["header"] == "lead.transition:1:9:NEW:READY_INVITE:import%C3%A9"
        assert seen["body_key"] == event.idempotency_key
