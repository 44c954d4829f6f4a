"""
Inbound email queue processor.

One queue item at a time:

    mark processing -> dedup gate -> extract -> resolve thread
                    -> responder (with timeout) -> save conversation
                    -> mark completed

Any exception after the item is marked processing is handled by the retry
state machine:

  PermanentPayloadError   failed immediately, attempt_count untouched
  anything else           attempt_count += 1, then pending again while
                          attempt_count < max_attempts, else failed

QueuePoller drives the processor on a fixed interval and, before every
tick, returns items stuck in processing past the staleness threshold to the
retry path.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from app.models.email_queue import QueueItem
from app.models.inbound_email import ExtractedEmail
from app.services.dedup import DedupGate
from app.services.errors import (
    EmptyBodyError,
    PermanentPayloadError,
    ResponderTimeoutError,
)
from app.services.inbound_email_adapter import extract_email
from app.services.queue_store import QueueStore
from app.services.responder import Responder
from app.services.thread_resolver import ConversationStore, message_key, resolve_thread

logger = logging.getLogger(__name__)


class EmptyBodyPolicy(str, Enum):
    ACCEPT = "accept"   # hand the email on with an empty body
    RETRY = "retry"     # treat an empty body as a retryable failure


class ProcessorSettings(BaseModel):
    max_attempts: int = Field(5, ge=1)
    poll_interval_seconds: float = Field(10.0, gt=0)
    stale_processing_seconds: float = Field(300.0, gt=0)
    responder_timeout_seconds: float = Field(30.0, gt=0)
    empty_body_policy: EmptyBodyPolicy = EmptyBodyPolicy.ACCEPT
    dedup_capacity: int = Field(10_000, ge=1)
    dedup_ttl_seconds: float = Field(86_400.0, gt=0)
    poller_enabled: bool = True

    @classmethod
    def from_env(cls) -> "ProcessorSettings":
        """Build settings from EMAIL_* environment variables; unset ones keep defaults."""
        env_vars = {
            "max_attempts": "EMAIL_MAX_ATTEMPTS",
            "poll_interval_seconds": "EMAIL_POLL_INTERVAL_SECONDS",
            "stale_processing_seconds": "EMAIL_STALE_PROCESSING_SECONDS",
            "responder_timeout_seconds": "EMAIL_RESPONDER_TIMEOUT_SECONDS",
            "empty_body_policy": "EMAIL_EMPTY_BODY_POLICY",
            "dedup_capacity": "EMAIL_DEDUP_CAPACITY",
            "dedup_ttl_seconds": "EMAIL_DEDUP_TTL_SECONDS",
            "poller_enabled": "EMAIL_POLLER_ENABLED",
        }
        values = {}
        for field_name, var in env_vars.items():
            raw = os.getenv(var)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip().lower()
        return cls(**values)


class ProcessingOutcome(str, Enum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    RETRY = "retry"
    FAILED = "failed"


class ProcessingResult(BaseModel):
    """What happened to one dequeued item."""

    item_id: str
    outcome: ProcessingOutcome
    attempt_count: int
    conversation_id: Optional[str] = None
    reply: Optional[str] = None
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class EmailProcessor:
    def __init__(
        self,
        queue: QueueStore,
        conversations: ConversationStore,
        responder: Responder,
        dedup: Optional[DedupGate] = None,
        settings: Optional[ProcessorSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or ProcessorSettings()
        self.queue = queue
        self.conversations = conversations
        self.responder = responder
        self.dedup = dedup or DedupGate(
            capacity=self.settings.dedup_capacity,
            ttl_seconds=self.settings.dedup_ttl_seconds,
        )
        self._clock = clock

    # -- retry state machine -------------------------------------------------

    def _retry_or_fail(self, item_id: str, error: str) -> QueueItem:
        item = self.queue.increment_attempts(item_id)
        if item.attempt_count < self.settings.max_attempts:
            logger.warning(
                f"Queue item {item_id} attempt {item.attempt_count}/"
                f"{self.settings.max_attempts} failed, will retry: {error}"
            )
            return self.queue.mark_pending(item_id, error)
        logger.error(
            f"Queue item {item_id} failed after {item.attempt_count} attempts: {error}"
        )
        return self.queue.mark_failed(item_id, error)

    def requeue_stale(self) -> list[str]:
        """
        Return processing items older than the staleness threshold to the
        retry path.  Each recovery consumes one attempt.
        """
        threshold = self._clock() - timedelta(seconds=self.settings.stale_processing_seconds)
        recovered = []
        for item in self.queue.list_stale_processing(threshold):
            started = item.processing_started_at or item.updated_at
            self._retry_or_fail(
                item.id, f"Stuck in processing since {started.isoformat()}"
            )
            recovered.append(item.id)
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stale processing item(s): {recovered}")
        return recovered

    # -- pipeline --------------------------------------------------------------

    async def _generate_reply(
        self,
        email: ExtractedEmail,
        history: list[ExtractedEmail],
    ) -> str:
        timeout = self.settings.responder_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.responder.generate_reply, email, history),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ResponderTimeoutError(
                f"Responder {self.responder.name!r} did not answer within {timeout}s"
            ) from e

    async def _run_pipeline(self, item: QueueItem) -> ProcessingResult:
        email = extract_email(item.payload)

        if not email.has_body:
            if self.settings.empty_body_policy == EmptyBodyPolicy.RETRY:
                raise EmptyBodyError("No body could be extracted from the payload")
            logger.warning(f"Queue item {item.id} has an empty body; continuing")

        key = message_key(email)
        thread = resolve_thread(
            email, self.conversations.find_by_message_id, now=self._clock(), key=key
        )
        history = self.conversations.history(thread.conversation_id)
        reply = await self._generate_reply(email, history)
        self.conversations.save(thread, email, key)

        completed = self.queue.mark_completed(item.id)
        self.dedup.mark_processed(item)
        logger.info(
            f"Queue item {item.id} completed (conversation {thread.conversation_id}, "
            f"reply {len(reply)} chars)"
        )
        return ProcessingResult(
            item_id=item.id,
            outcome=ProcessingOutcome.COMPLETED,
            attempt_count=completed.attempt_count,
            conversation_id=thread.conversation_id,
            reply=reply,
        )

    async def process_item(self, item: QueueItem) -> ProcessingResult:
        """Run one pending item through the pipeline and the retry state machine."""
        item = self.queue.mark_processing(item.id)
        logger.info(f"Processing queue item {item.id} (attempt {item.attempt_count + 1})")

        if item.attempt_count >= self.settings.max_attempts:
            failed = self.queue.mark_failed(item.id, item.last_error or "Attempts exhausted")
            return ProcessingResult(
                item_id=item.id,
                outcome=ProcessingOutcome.FAILED,
                attempt_count=failed.attempt_count,
                error=failed.last_error,
            )

        if not self.dedup.should_process(item):
            done = self.queue.mark_completed(item.id)
            return ProcessingResult(
                item_id=item.id,
                outcome=ProcessingOutcome.DUPLICATE,
                attempt_count=done.attempt_count,
            )

        try:
            return await self._run_pipeline(item)
        except PermanentPayloadError as e:
            error = _describe(e)
            logger.error(f"Queue item {item.id} failed permanently: {error}")
            failed = self.queue.mark_failed(item.id, error)
            return ProcessingResult(
                item_id=item.id,
                outcome=ProcessingOutcome.FAILED,
                attempt_count=failed.attempt_count,
                error=error,
            )
        except Exception as e:
            error = _describe(e)
            updated = self._retry_or_fail(item.id, error)
            outcome = ProcessingOutcome.FAILED if updated.is_terminal else ProcessingOutcome.RETRY
            return ProcessingResult(
                item_id=item.id,
                outcome=outcome,
                attempt_count=updated.attempt_count,
                error=error,
            )

    async def process_next(self) -> Optional[ProcessingResult]:
        """Process the oldest pending item; None when the queue is empty."""
        item = self.queue.next_pending()
        if item is None:
            return None
        return await self.process_item(item)


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class QueuePoller:
    """
    Fixed-interval loop around EmailProcessor.

    At most one item is processed per tick.  Pass `sleep` to drive the loop
    without wall-clock waits; by default the wait ends early when stop() is
    called.
    """

    def __init__(
        self,
        processor: EmailProcessor,
        interval: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.processor = processor
        self.interval = interval or processor.settings.poll_interval_seconds
        self._sleep = sleep or self._wait_for_stop
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _wait_for_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def tick(self) -> Optional[ProcessingResult]:
        """Recover stale items, then process at most one pending item."""
        self.ticks += 1
        try:
            self.processor.requeue_stale()
            return await self.processor.process_next()
        except Exception as e:
            # Storage outages surface here; the next tick tries again.
            logger.error(f"Queue poll tick {self.ticks} failed: {_describe(e)}")
            return None

    async def run(self, max_ticks: Optional[int] = None) -> None:
        logger.info(f"Queue poller started (interval {self.interval}s)")
        while not self._stop.is_set():
            await self.tick()
            if max_ticks is not None and self.ticks >= max_ticks:
                break
            await self._sleep(self.interval)
        logger.info("Queue poller stopped")

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stop.clear()
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
