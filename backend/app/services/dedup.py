"""
Deduplication gate.

A delivery's key is a hash of its arrival timestamp, sender, subject and
message id.  Keys live in a bounded LRU with a time-to-live, so memory stays
flat no matter how long the process runs.  The gate is process-local; a
restart forgets every key.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable

from app.models.email_queue import QueueItem
from app.services.inbound_email_adapter import peek_identity

logger = logging.getLogger(__name__)


def dedup_key(item: QueueItem) -> str:
    """sha256 over (received_at, sender, subject, message id)."""
    sender, subject, message_id = peek_identity(item.payload)
    parts = [item.payload.received_at.isoformat(), sender, subject, message_id]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


class DedupGate:
    """
    Remembers which logical messages have already been processed.

    should_process() is checked once per dequeue, before any extraction work;
    mark_processed() is called after the item completes.
    """

    def __init__(
        self,
        capacity: int = 10_000,
        ttl_seconds: float = 86_400,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def _expire(self, now: float) -> None:
        # Entries are kept in insertion/refresh order, so expired ones are
        # always at the front.
        while self._seen:
            key, marked_at = next(iter(self._seen.items()))
            if now - marked_at < self.ttl_seconds:
                break
            self._seen.popitem(last=False)

    def seen(self, key: str) -> bool:
        with self._lock:
            self._expire(self._clock())
            return key in self._seen

    def should_process(self, item: QueueItem) -> bool:
        key = dedup_key(item)
        if self.seen(key):
            logger.info(f"Queue item {item.id} is a duplicate delivery (key {key[:12]})")
            return False
        return True

    def mark_processed(self, item: QueueItem) -> None:
        key = dedup_key(item)
        with self._lock:
            now = self._clock()
            self._expire(now)
            self._seen[key] = now
            self._seen.move_to_end(key)
            while len(self._seen) > self.capacity:
                evicted, _ = self._seen.popitem(last=False)
                logger.debug(f"Dedup key {evicted[:12]} evicted (capacity {self.capacity})")
