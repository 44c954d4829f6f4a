"""
Email processor and queue poller tests.

Everything runs against the in-memory stores with a recording responder, so
no network or database is touched.  Covers the retry state machine, the
dedup invariant, threading, responder timeouts, permanent failures, the
empty-body policy, stale-item recovery and the poller loop.
"""

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.models.email_queue import QueueStatus
from app.models.inbound_email import ExtractedEmail
from app.services.email_processor import (
    EmailProcessor,
    EmptyBodyPolicy,
    ProcessingOutcome,
    ProcessorSettings,
    QueuePoller,
)
from app.services.inbound_email_adapter import build_delivery
from app.services.queue_store import InMemoryQueueStore
from app.services.responder import Responder
from app.services.thread_resolver import InMemoryConversationStore


T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)
BOUNDARY = "xYzZY"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingResponder(Responder):
    """Records every call; optionally raises or sleeps."""

    name = "recording"

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.calls: list[tuple[ExtractedEmail, list[ExtractedEmail]]] = []
        self.error = error
        self.delay = delay

    def generate_reply(self, context, thread_history):
        self.calls.append((context, list(thread_history)))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return f"Reply to {context.subject}"


def _make_multipart(fields: dict[str, str]) -> bytes:
    parts = [
        f"--{BOUNDARY}\r\n"
        f'Content-Disposition: form-data; name="{name}"\r\n'
        f"\r\n"
        f"{value}\r\n"
        for name, value in fields.items()
    ]
    parts.append(f"--{BOUNDARY}--\r\n")
    return "".join(parts).encode("utf-8")


def _make_sendgrid_body(
    text: str = "Hi there, this is a message.",
    subject: str = "Hello",
    message_id: str = "a@example.com",
    in_reply_to: str | None = None,
) -> bytes:
    headers = [
        "From: Jane Doe <jane@example.com>",
        f"Subject: {subject}",
        f"Message-ID: <{message_id}>",
    ]
    if in_reply_to:
        headers.append(f"In-Reply-To: <{in_reply_to}>")
    raw_message = "\r\n".join(headers + ["", text])
    return _make_multipart({
        "from": "Jane Doe <jane@example.com>",
        "subject": subject,
        "text": text,
        "email": raw_message,
    })


def _make_processor(
    responder: Responder | None = None,
    clock: FakeClock | None = None,
    **settings,
) -> EmailProcessor:
    clock = clock or FakeClock()
    return EmailProcessor(
        queue=InMemoryQueueStore(clock=clock),
        conversations=InMemoryConversationStore(clock=clock),
        responder=responder or RecordingResponder(),
        settings=ProcessorSettings(**settings),
        clock=clock,
    )


def _enqueue(processor: EmailProcessor, body: bytes, received_at: datetime = T0):
    ct = f"multipart/form-data; boundary={BOUNDARY}"
    return processor.queue.enqueue(build_delivery(body, ct, received_at))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestProcessorSettings:
    def test_defaults(self):
        settings = ProcessorSettings()
        assert settings.max_attempts == 5
        assert settings.poll_interval_seconds == 10
        assert settings.empty_body_policy == EmptyBodyPolicy.ACCEPT

    def test_from_env(self):
        env = {
            "EMAIL_MAX_ATTEMPTS": "3",
            "EMAIL_POLL_INTERVAL_SECONDS": "2.5",
            "EMAIL_EMPTY_BODY_POLICY": "RETRY",
            "EMAIL_POLLER_ENABLED": "false",
        }
        with patch.dict("os.environ", env):
            settings = ProcessorSettings.from_env()
        assert settings.max_attempts == 3
        assert settings.poll_interval_seconds == 2.5
        assert settings.empty_body_policy == EmptyBodyPolicy.RETRY
        assert settings.poller_enabled is False

    def test_invalid_max_attempts(self):
        with patch.dict("os.environ", {"EMAIL_MAX_ATTEMPTS": "0"}):
            with pytest.raises(ValueError):
                ProcessorSettings.from_env()


class TestSuccessfulProcessing:
    @pytest.mark.asyncio
    async def test_item_completes_and_responder_gets_clean_email(self):
        responder = RecordingResponder()
        processor = _make_processor(responder)
        item = _enqueue(processor, _make_sendgrid_body())

        result = await processor.process_next()

        assert result.outcome == ProcessingOutcome.COMPLETED
        assert result.reply == "Reply to Hello"
        assert processor.queue.get(item.id).status == QueueStatus.COMPLETED
        email, history = responder.calls[0]
        assert email.sender == "jane@example.com"
        assert email.body == "Hi there, this is a message."
        assert history == []

    @pytest.mark.asyncio
    async def test_empty_queue_returns_none(self):
        assert await _make_processor().process_next() is None

    @pytest.mark.asyncio
    async def test_items_processed_oldest_first(self):
        processor = _make_processor()
        first = _enqueue(processor, _make_sendgrid_body(subject="One", message_id="1@x.com"))
        _enqueue(processor, _make_sendgrid_body(subject="Two", message_id="2@x.com"))
        result = await processor.process_next()
        assert result.item_id == first.id


class TestRetryStateMachine:
    @pytest.mark.asyncio
    async def test_retry_exhaustion(self):
        """pending->processing->pending (max-1) times, then ->failed."""
        responder = RecordingResponder(error=RuntimeError("responder 503"))
        processor = _make_processor(responder, max_attempts=5)
        item = _enqueue(processor, _make_sendgrid_body())

        outcomes = []
        for _ in range(5):
            result = await processor.process_next()
            outcomes.append(result.outcome)

        assert outcomes == [ProcessingOutcome.RETRY] * 4 + [ProcessingOutcome.FAILED]
        final = processor.queue.get(item.id)
        assert final.status == QueueStatus.FAILED
        assert final.attempt_count == 5
        assert "responder 503" in final.last_error
        assert await processor.process_next() is None

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        responder = RecordingResponder(error=RuntimeError("flaky"))
        processor = _make_processor(responder)
        item = _enqueue(processor, _make_sendgrid_body())

        first = await processor.process_next()
        assert first.outcome == ProcessingOutcome.RETRY
        assert processor.queue.get(item.id).status == QueueStatus.PENDING

        responder.error = None
        second = await processor.process_next()
        assert second.outcome == ProcessingOutcome.COMPLETED
        assert processor.queue.get(item.id).attempt_count == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_consumes_no_attempts(self):
        responder = RecordingResponder()
        processor = _make_processor(responder)
        item = processor.queue.enqueue(
            build_delivery(json.dumps({"event": "ping"}).encode(), "application/json", T0)
        )

        result = await processor.process_next()

        assert result.outcome == ProcessingOutcome.FAILED
        stored = processor.queue.get(item.id)
        assert stored.status == QueueStatus.FAILED
        assert stored.attempt_count == 0
        assert "PermanentPayloadError" in stored.last_error
        assert responder.calls == []

    @pytest.mark.asyncio
    async def test_malformed_from_header_still_completes(self):
        responder = RecordingResponder()
        processor = _make_processor(responder, max_attempts=2)
        raw = (
            'From: "\r\n'
            "Subject: Hi\r\n"
            "Message-ID: <m1@x>\r\n"
            "\r\n"
            "Hello there, this is the body."
        )
        item = processor.queue.enqueue(build_delivery(raw.encode(), "message/rfc822", T0))

        result = await processor.process_next()

        assert result.outcome == ProcessingOutcome.COMPLETED
        assert processor.queue.get(item.id).attempt_count == 0
        assert responder.calls[0][0].body == "Hello there, this is the body."

    @pytest.mark.asyncio
    async def test_responder_timeout_is_retryable(self):
        responder = RecordingResponder(delay=0.5)
        processor = _make_processor(responder, responder_timeout_seconds=0.05)
        item = _enqueue(processor, _make_sendgrid_body())

        result = await processor.process_next()

        assert result.outcome == ProcessingOutcome.RETRY
        assert "ResponderTimeoutError" in result.error
        assert processor.queue.get(item.id).status == QueueStatus.PENDING


class TestEmptyBodyPolicy:
    def _empty_body(self) -> bytes:
        raw = "Message-ID: <empty@example.com>\r\nContent-Type: image/png\r\n\r\n"
        return _make_multipart({"from": "jane@example.com", "email": raw})

    @pytest.mark.asyncio
    async def test_accept_passes_empty_body_on(self):
        responder = RecordingResponder()
        processor = _make_processor(responder, empty_body_policy="accept")
        _enqueue(processor, self._empty_body())
        result = await processor.process_next()
        assert result.outcome == ProcessingOutcome.COMPLETED
        assert responder.calls[0][0].body == ""
        assert responder.calls[0][0].message_id == "empty@example.com"

    @pytest.mark.asyncio
    async def test_retry_treats_empty_body_as_failure(self):
        responder = RecordingResponder()
        processor = _make_processor(responder, empty_body_policy="retry", max_attempts=2)
        item = _enqueue(processor, self._empty_body())
        await processor.process_next()
        await processor.process_next()
        stored = processor.queue.get(item.id)
        assert stored.status == QueueStatus.FAILED
        assert "EmptyBodyError" in stored.last_error
        assert responder.calls == []


class TestDedupInvariant:
    @pytest.mark.asyncio
    async def test_identical_deliveries_reach_responder_once(self):
        responder = RecordingResponder()
        processor = _make_processor(responder)
        body = _make_sendgrid_body()
        first = _enqueue(processor, body, received_at=T0)
        second = _enqueue(processor, body, received_at=T0)

        r1 = await processor.process_next()
        r2 = await processor.process_next()

        assert r1.outcome == ProcessingOutcome.COMPLETED
        assert r2.outcome == ProcessingOutcome.DUPLICATE
        assert len(responder.calls) == 1
        assert processor.queue.get(first.id).status == QueueStatus.COMPLETED
        assert processor.queue.get(second.id).status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_different_timestamps_are_not_duplicates(self):
        responder = RecordingResponder()
        processor = _make_processor(responder)
        body = _make_sendgrid_body()
        _enqueue(processor, body, received_at=T0)
        _enqueue(processor, body, received_at=T0 + timedelta(seconds=30))
        await processor.process_next()
        await processor.process_next()
        assert len(responder.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_item_is_not_marked_processed(self):
        responder = RecordingResponder(error=RuntimeError("down"))
        processor = _make_processor(responder)
        item = _enqueue(processor, _make_sendgrid_body())
        await processor.process_next()
        assert processor.dedup.should_process(processor.queue.get(item.id))


class TestThreading:
    @pytest.mark.asyncio
    async def test_reply_joins_thread_and_sees_history(self):
        responder = RecordingResponder()
        processor = _make_processor(responder)
        _enqueue(processor, _make_sendgrid_body(text="First message here", message_id="a@example.com"))
        _enqueue(processor, _make_sendgrid_body(
            text="Second message here",
            subject="Re: Hello",
            message_id="b@example.com",
            in_reply_to="a@example.com",
        ))

        r1 = await processor.process_next()
        r2 = await processor.process_next()

        assert r1.conversation_id == r2.conversation_id
        thread = processor.conversations.find_by_message_id("b@example.com")
        assert thread.message_ids == ["a@example.com", "b@example.com"]
        _, history = responder.calls[1]
        assert [m.body for m in history] == ["First message here"]

    @pytest.mark.asyncio
    async def test_new_thread_uses_processor_clock(self):
        clock = FakeClock(T0 + timedelta(days=3))
        processor = _make_processor(clock=clock)
        _enqueue(processor, _make_sendgrid_body(message_id="a@example.com"))
        await processor.process_next()
        thread = processor.conversations.find_by_message_id("a@example.com")
        assert thread.created_at == T0 + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_failed_reply_does_not_extend_thread(self):
        responder = RecordingResponder(error=RuntimeError("down"))
        processor = _make_processor(responder)
        _enqueue(processor, _make_sendgrid_body(message_id="a@example.com"))
        await processor.process_next()
        assert processor.conversations.find_by_message_id("a@example.com") is None


class TestStaleRecovery:
    def test_stale_processing_item_is_requeued(self):
        clock = FakeClock()
        processor = _make_processor(clock=clock, stale_processing_seconds=300)
        item = _enqueue(processor, _make_sendgrid_body())
        processor.queue.mark_processing(item.id)

        clock.advance(301)
        recovered = processor.requeue_stale()

        assert recovered == [item.id]
        stored = processor.queue.get(item.id)
        assert stored.status == QueueStatus.PENDING
        assert stored.attempt_count == 1

    def test_fresh_processing_item_is_left_alone(self):
        clock = FakeClock()
        processor = _make_processor(clock=clock, stale_processing_seconds=300)
        item = _enqueue(processor, _make_sendgrid_body())
        processor.queue.mark_processing(item.id)
        clock.advance(10)
        assert processor.requeue_stale() == []
        assert processor.queue.get(item.id).status == QueueStatus.PROCESSING

    def test_stale_item_on_last_attempt_fails(self):
        clock = FakeClock()
        processor = _make_processor(clock=clock, max_attempts=1)
        item = _enqueue(processor, _make_sendgrid_body())
        processor.queue.mark_processing(item.id)
        clock.advance(1000)
        processor.requeue_stale()
        assert processor.queue.get(item.id).status == QueueStatus.FAILED


class TestQueuePoller:
    @pytest.mark.asyncio
    async def test_one_item_per_tick(self):
        processor = _make_processor()
        _enqueue(processor, _make_sendgrid_body(subject="One", message_id="1@x.com"))
        _enqueue(processor, _make_sendgrid_body(subject="Two", message_id="2@x.com"))
        poller = QueuePoller(processor)

        await poller.tick()

        assert processor.queue.stats().counts["completed"] == 1
        assert processor.queue.stats().counts["pending"] == 1

    @pytest.mark.asyncio
    async def test_run_uses_injected_sleep(self):
        processor = _make_processor()
        for i in range(3):
            _enqueue(processor, _make_sendgrid_body(subject=f"S{i}", message_id=f"{i}@x.com"))
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        poller = QueuePoller(processor, interval=10, sleep=fake_sleep)
        await poller.run(max_ticks=3)

        assert processor.queue.stats().counts["completed"] == 3
        assert sleeps == [10, 10]

    @pytest.mark.asyncio
    async def test_tick_survives_store_errors(self):
        processor = _make_processor()
        poller = QueuePoller(processor)
        with patch.object(processor.queue, "next_pending", side_effect=ConnectionError("db down")):
            assert await poller.tick() is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        processor = _make_processor()
        poller = QueuePoller(processor, interval=60)
        poller.start()
        await asyncio.sleep(0)
        assert poller.running
        await poller.stop()
        assert not poller.running
