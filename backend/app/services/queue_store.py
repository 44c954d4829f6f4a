"""
Queue persistence for inbound email deliveries.

The processor only talks to the QueueStore interface.  Two implementations:

  InMemoryQueueStore   process-local, the default and what the tests use
  SupabaseQueueStore   rows in the email_queue table via PostgREST

Both enforce the lifecycle in app.models.email_queue.ALLOWED_TRANSITIONS and
never delete items.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.models.email_queue import (
    ALLOWED_TRANSITIONS,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from app.models.inbound_email import RawDelivery
from app.services.errors import InvalidTransitionError, QueueStoreError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_transition(item: QueueItem, target: QueueStatus) -> None:
    """Raise InvalidTransitionError unless item may move to target."""
    if target not in ALLOWED_TRANSITIONS[item.status]:
        raise InvalidTransitionError(
            f"Queue item {item.id}: {item.status.value} -> {target.value} is not allowed"
        )


class QueueStore(ABC):
    """Persistence boundary for queue items."""

    @abstractmethod
    def enqueue(self, delivery: RawDelivery) -> QueueItem:
        """Append a new pending item."""

    @abstractmethod
    def next_pending(self) -> Optional[QueueItem]:
        """Oldest pending item, or None when the queue is drained."""

    @abstractmethod
    def get(self, item_id: str) -> QueueItem:
        """Raises KeyError when the item does not exist."""

    @abstractmethod
    def mark_processing(self, item_id: str) -> QueueItem: ...

    @abstractmethod
    def mark_completed(self, item_id: str) -> QueueItem: ...

    @abstractmethod
    def mark_pending(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        """Return a processing item to pending for a later retry."""

    @abstractmethod
    def mark_failed(self, item_id: str, error: Optional[str] = None) -> QueueItem: ...

    @abstractmethod
    def increment_attempts(self, item_id: str) -> QueueItem: ...

    @abstractmethod
    def list_processing(self) -> list[QueueItem]:
        """Items currently in processing, oldest first."""

    @abstractmethod
    def stats(self) -> QueueStats: ...

    def list_stale_processing(self, older_than: datetime) -> list[QueueItem]:
        """Processing items whose processing started before older_than."""
        return [
            item for item in self.list_processing()
            if (item.processing_started_at or item.updated_at) < older_than
        ]


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryQueueStore(QueueStore):
    """
    Dict-backed queue.

    Safe for concurrent webhook requests: every operation holds a lock.
    Items are returned as copies so callers cannot mutate stored state.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._items: dict[str, QueueItem] = {}
        self._order: list[str] = []
        self._lock = threading.Lock()

    def _require(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(f"Queue item {item_id} not found")
        return item

    def _transition(
        self,
        item_id: str,
        target: QueueStatus,
        error: Optional[str] = None,
    ) -> QueueItem:
        with self._lock:
            item = self._require(item_id)
            check_transition(item, target)
            now = self._clock()
            item.status = target
            item.updated_at = now
            if target == QueueStatus.PROCESSING:
                item.processing_started_at = now
            elif target == QueueStatus.PENDING:
                item.processing_started_at = None
            elif target in (QueueStatus.COMPLETED, QueueStatus.FAILED):
                item.processed_at = now
            if error is not None:
                item.last_error = error
            return item.model_copy(deep=True)

    def enqueue(self, delivery: RawDelivery) -> QueueItem:
        now = self._clock()
        item = QueueItem(
            id=str(uuid.uuid4()),
            payload=delivery,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._items[item.id] = item
            self._order.append(item.id)
        return item.model_copy(deep=True)

    def next_pending(self) -> Optional[QueueItem]:
        with self._lock:
            for item_id in self._order:
                item = self._items[item_id]
                if item.status == QueueStatus.PENDING:
                    return item.model_copy(deep=True)
        return None

    def get(self, item_id: str) -> QueueItem:
        with self._lock:
            return self._require(item_id).model_copy(deep=True)

    def mark_processing(self, item_id: str) -> QueueItem:
        return self._transition(item_id, QueueStatus.PROCESSING)

    def mark_completed(self, item_id: str) -> QueueItem:
        return self._transition(item_id, QueueStatus.COMPLETED)

    def mark_pending(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        return self._transition(item_id, QueueStatus.PENDING, error)

    def mark_failed(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        return self._transition(item_id, QueueStatus.FAILED, error)

    def increment_attempts(self, item_id: str) -> QueueItem:
        with self._lock:
            item = self._require(item_id)
            if item.is_terminal:
                raise InvalidTransitionError(
                    f"Queue item {item_id} is {item.status.value}; attempts are frozen"
                )
            item.attempt_count += 1
            item.updated_at = self._clock()
            return item.model_copy(deep=True)

    def list_processing(self) -> list[QueueItem]:
        with self._lock:
            return [
                self._items[item_id].model_copy(deep=True)
                for item_id in self._order
                if self._items[item_id].status == QueueStatus.PROCESSING
            ]

    def stats(self) -> QueueStats:
        with self._lock:
            items = [self._items[item_id] for item_id in self._order]
        counts = {status.value: 0 for status in QueueStatus}
        for item in items:
            counts[item.status.value] += 1
        return QueueStats(
            counts=counts,
            processing_ids=[i.id for i in items if i.status == QueueStatus.PROCESSING],
            failed_ids=[i.id for i in items if i.status == QueueStatus.FAILED],
        )


# ---------------------------------------------------------------------------
# Supabase store
# ---------------------------------------------------------------------------

class SupabaseQueueStore(QueueStore):
    """
    Queue rows in the email_queue table.

    Columns: id, payload (jsonb), status, attempt_count, created_at,
    updated_at, processing_started_at, processed_at, last_error.

    Status updates are guarded with .eq("status", <current>) so that a row
    changed by someone else in the meantime is not silently overwritten.
    """

    TABLE = "email_queue"

    def __init__(self, client: Any, clock: Callable[[], datetime] = utcnow):
        if client is None:
            raise QueueStoreError(
                "Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY)"
            )
        self._client = client
        self._clock = clock

    @staticmethod
    def _to_item(row: dict) -> QueueItem:
        return QueueItem(
            id=str(row["id"]),
            payload=RawDelivery.from_record(row["payload"]),
            status=row["status"],
            attempt_count=row.get("attempt_count") or 0,
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            processing_started_at=row.get("processing_started_at"),
            processed_at=row.get("processed_at"),
            last_error=row.get("last_error"),
        )

    def _execute(self, action: str, query) -> list[dict]:
        try:
            result = query.execute()
        except Exception as e:
            logger.error(f"email_queue {action} failed: {e}")
            raise QueueStoreError(f"email_queue {action} failed: {e}") from e
        return result.data or []

    def _update(self, item: QueueItem, values: dict) -> QueueItem:
        rows = self._execute(
            "update",
            self._client.table(self.TABLE)
            .update(values)
            .eq("id", item.id)
            .eq("status", item.status.value),
        )
        if not rows:
            raise QueueStoreError(
                f"Queue item {item.id} changed while being updated (expected {item.status.value})"
            )
        return self._to_item(rows[0])

    def _transition(
        self,
        item_id: str,
        target: QueueStatus,
        error: Optional[str] = None,
    ) -> QueueItem:
        item = self.get(item_id)
        check_transition(item, target)
        now = self._clock().isoformat()
        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if target == QueueStatus.PROCESSING:
            values["processing_started_at"] = now
        elif target == QueueStatus.PENDING:
            values["processing_started_at"] = None
        else:
            values["processed_at"] = now
        if error is not None:
            values["last_error"] = error
        return self._update(item, values)

    def enqueue(self, delivery: RawDelivery) -> QueueItem:
        now = self._clock().isoformat()
        rows = self._execute(
            "insert",
            self._client.table(self.TABLE).insert({
                "id": str(uuid.uuid4()),
                "payload": delivery.to_record(),
                "status": QueueStatus.PENDING.value,
                "attempt_count": 0,
                "created_at": now,
                "updated_at": now,
            }),
        )
        if not rows:
            raise QueueStoreError("email_queue insert returned no row")
        return self._to_item(rows[0])

    def next_pending(self) -> Optional[QueueItem]:
        rows = self._execute(
            "select",
            self._client.table(self.TABLE)
            .select("*")
            .eq("status", QueueStatus.PENDING.value)
            .order("created_at")
            .limit(1),
        )
        return self._to_item(rows[0]) if rows else None

    def get(self, item_id: str) -> QueueItem:
        rows = self._execute(
            "select",
            self._client.table(self.TABLE).select("*").eq("id", item_id),
        )
        if not rows:
            raise KeyError(f"Queue item {item_id} not found")
        return self._to_item(rows[0])

    def mark_processing(self, item_id: str) -> QueueItem:
        return self._transition(item_id, QueueStatus.PROCESSING)

    def mark_completed(self, item_id: str) -> QueueItem:
        return self._transition(item_id, QueueStatus.COMPLETED)

    def mark_pending(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        return self._transition(item_id, QueueStatus.PENDING, error)

    def mark_failed(self, item_id: str, error: Optional[str] = None) -> QueueItem:
        return self._transition(item_id, QueueStatus.FAILED, error)

    def increment_attempts(self, item_id: str) -> QueueItem:
        item = self.get(item_id)
        if item.is_terminal:
            raise InvalidTransitionError(
                f"Queue item {item_id} is {item.status.value}; attempts are frozen"
            )
        return self._update(item, {
            "attempt_count": item.attempt_count + 1,
            "updated_at": self._clock().isoformat(),
        })

    def list_processing(self) -> list[QueueItem]:
        rows = self._execute(
            "select",
            self._client.table(self.TABLE)
            .select("*")
            .eq("status", QueueStatus.PROCESSING.value)
            .order("created_at"),
        )
        return [self._to_item(row) for row in rows]

    def stats(self) -> QueueStats:
        rows = self._execute(
            "select",
            self._client.table(self.TABLE).select("id, status").order("created_at"),
        )
        counts = {status.value: 0 for status in QueueStatus}
        for row in rows:
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return QueueStats(
            counts=counts,
            processing_ids=[str(r["id"]) for r in rows if r["status"] == QueueStatus.PROCESSING.value],
            failed_ids=[str(r["id"]) for r in rows if r["status"] == QueueStatus.FAILED.value],
        )
