"""
Queue store tests.

The in-memory store is exercised directly; the Supabase store is exercised
against a mocked client chain.  No real DB calls.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, Mock

import pytest

from app.models.email_queue import QueueStatus
from app.models.inbound_email import PayloadKind, RawDelivery
from app.services.errors import InvalidTransitionError, QueueStoreError
from app.services.queue_store import InMemoryQueueStore, SupabaseQueueStore


T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


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


def _make_delivery(body: bytes = b'{"from": "a@b.com", "subject": "S", "text": "T"}') -> RawDelivery:
    return RawDelivery(
        body=body,
        content_type="application/json",
        received_at=T0,
        kind=PayloadKind.DIRECT_JSON,
    )


def _make_row(item_id: str = "q-1", status: str = "pending", attempt_count: int = 0) -> dict:
    return {
        "id": item_id,
        "payload": _make_delivery().to_record(),
        "status": status,
        "attempt_count": attempt_count,
        "created_at": T0.isoformat(),
        "updated_at": T0.isoformat(),
        "processing_started_at": None,
        "processed_at": None,
        "last_error": None,
    }


def _make_supabase_chain(*results):
    """
    Build a MagicMock that returns results[i] from the i-th .execute() call,
    regardless of which chaining methods (.eq, .select, .insert, etc.) were called.
    """
    mock = MagicMock()
    mock.select.return_value = mock
    mock.eq.return_value = mock
    mock.insert.return_value = mock
    mock.update.return_value = mock
    mock.order.return_value = mock
    mock.limit.return_value = mock
    mock.execute.side_effect = [Mock(data=r) for r in results]
    return mock


def _make_client(chain) -> MagicMock:
    client = MagicMock()
    client.table.return_value = chain
    return client


class TestInMemoryQueueStore:
    """Lifecycle and FIFO behaviour of the in-memory store."""

    def test_enqueue_creates_pending_item(self):
        store = InMemoryQueueStore(clock=FakeClock())
        item = store.enqueue(_make_delivery())
        assert item.status == QueueStatus.PENDING
        assert item.attempt_count == 0
        assert item.created_at == T0

    def test_next_pending_is_oldest_first(self):
        clock = FakeClock()
        store = InMemoryQueueStore(clock=clock)
        first = store.enqueue(_make_delivery(b"1"))
        clock.advance(1)
        store.enqueue(_make_delivery(b"2"))
        assert store.next_pending().id == first.id

    def test_next_pending_skips_non_pending(self):
        store = InMemoryQueueStore(clock=FakeClock())
        first = store.enqueue(_make_delivery(b"1"))
        second = store.enqueue(_make_delivery(b"2"))
        store.mark_processing(first.id)
        assert store.next_pending().id == second.id

    def test_empty_queue(self):
        assert InMemoryQueueStore().next_pending() is None

    def test_full_success_lifecycle(self):
        clock = FakeClock()
        store = InMemoryQueueStore(clock=clock)
        item = store.enqueue(_make_delivery())
        clock.advance(5)
        processing = store.mark_processing(item.id)
        assert processing.processing_started_at == T0 + timedelta(seconds=5)
        done = store.mark_completed(item.id)
        assert done.status == QueueStatus.COMPLETED
        assert done.processed_at is not None

    def test_retry_lifecycle_records_error(self):
        store = InMemoryQueueStore(clock=FakeClock())
        item = store.enqueue(_make_delivery())
        store.mark_processing(item.id)
        store.increment_attempts(item.id)
        retried = store.mark_pending(item.id, "boom")
        assert retried.status == QueueStatus.PENDING
        assert retried.attempt_count == 1
        assert retried.last_error == "boom"
        assert retried.processing_started_at is None

    def test_pending_cannot_complete_directly(self):
        store = InMemoryQueueStore()
        item = store.enqueue(_make_delivery())
        with pytest.raises(InvalidTransitionError):
            store.mark_completed(item.id)

    def test_terminal_items_are_frozen(self):
        store = InMemoryQueueStore()
        item = store.enqueue(_make_delivery())
        store.mark_processing(item.id)
        store.mark_failed(item.id, "permanent")
        with pytest.raises(InvalidTransitionError):
            store.mark_pending(item.id)
        with pytest.raises(InvalidTransitionError):
            store.increment_attempts(item.id)
        assert store.get(item.id).last_error == "permanent"

    def test_returned_items_are_copies(self):
        store = InMemoryQueueStore()
        item = store.enqueue(_make_delivery())
        item.status = QueueStatus.FAILED
        assert store.get(item.id).status == QueueStatus.PENDING

    def test_unknown_id(self):
        with pytest.raises(KeyError):
            InMemoryQueueStore().get("missing")

    def test_stale_processing_listing(self):
        clock = FakeClock()
        store = InMemoryQueueStore(clock=clock)
        old = store.enqueue(_make_delivery(b"1"))
        store.mark_processing(old.id)
        clock.advance(600)
        fresh = store.enqueue(_make_delivery(b"2"))
        store.mark_processing(fresh.id)
        stale = store.list_stale_processing(clock() - timedelta(seconds=300))
        assert [i.id for i in stale] == [old.id]

    def test_stats(self):
        store = InMemoryQueueStore()
        a = store.enqueue(_make_delivery(b"1"))
        b = store.enqueue(_make_delivery(b"2"))
        store.enqueue(_make_delivery(b"3"))
        store.mark_processing(a.id)
        store.mark_processing(b.id)
        store.mark_failed(b.id, "x")
        stats = store.stats()
        assert stats.counts == {"pending": 1, "processing": 1, "completed": 0, "failed": 1}
        assert stats.processing_ids == [a.id]
        assert stats.failed_ids == [b.id]


class TestSupabaseQueueStore:
    """Row mapping and guarded updates against a mocked PostgREST chain."""

    def test_requires_client(self):
        with pytest.raises(QueueStoreError):
            SupabaseQueueStore(None)

    def test_enqueue_inserts_pending_row(self):
        chain = _make_supabase_chain([_make_row()])
        store = SupabaseQueueStore(_make_client(chain), clock=FakeClock())
        item = store.enqueue(_make_delivery())
        inserted = chain.insert.call_args[0][0]
        assert inserted["status"] == "pending"
        assert inserted["attempt_count"] == 0
        assert inserted["payload"]["kind"] == "direct_json"
        assert item.payload.body == _make_delivery().body

    def test_next_pending_orders_by_created_at(self):
        chain = _make_supabase_chain([_make_row("q-9")])
        store = SupabaseQueueStore(_make_client(chain))
        item = store.next_pending()
        assert item.id == "q-9"
        chain.eq.assert_called_with("status", "pending")
        chain.order.assert_called_with("created_at")
        chain.limit.assert_called_with(1)

    def test_next_pending_empty(self):
        store = SupabaseQueueStore(_make_client(_make_supabase_chain([])))
        assert store.next_pending() is None

    def test_mark_processing_guards_on_current_status(self):
        chain = _make_supabase_chain(
            [_make_row(status="pending")],
            [_make_row(status="processing")],
        )
        store = SupabaseQueueStore(_make_client(chain), clock=FakeClock())
        item = store.mark_processing("q-1")
        assert item.status == QueueStatus.PROCESSING
        values = chain.update.call_args[0][0]
        assert values["status"] == "processing"
        assert values["processing_started_at"] == T0.isoformat()
        chain.eq.assert_any_call("status", "pending")

    def test_invalid_transition_is_rejected_before_update(self):
        chain = _make_supabase_chain([_make_row(status="completed")])
        store = SupabaseQueueStore(_make_client(chain))
        with pytest.raises(InvalidTransitionError):
            store.mark_pending("q-1")
        chain.update.assert_not_called()

    def test_concurrent_change_raises(self):
        chain = _make_supabase_chain([_make_row(status="pending")], [])
        store = SupabaseQueueStore(_make_client(chain))
        with pytest.raises(QueueStoreError):
            store.mark_processing("q-1")

    def test_increment_attempts(self):
        chain = _make_supabase_chain(
            [_make_row(status="processing", attempt_count=2)],
            [_make_row(status="processing", attempt_count=3)],
        )
        store = SupabaseQueueStore(_make_client(chain))
        item = store.increment_attempts("q-1")
        assert item.attempt_count == 3
        assert chain.update.call_args[0][0]["attempt_count"] == 3

    def test_execute_errors_become_queue_store_errors(self):
        chain = MagicMock()
        chain.select.return_value = chain
        chain.eq.return_value = chain
        chain.execute.side_effect = ConnectionError("network down")
        store = SupabaseQueueStore(_make_client(chain))
        with pytest.raises(QueueStoreError):
            store.get("q-1")

    def test_stats(self):
        chain = _make_supabase_chain([
            {"id": "a", "status": "pending"},
            {"id": "b", "status": "processing"},
            {"id": "c", "status": "failed"},
        ])
        stats = SupabaseQueueStore(_make_client(chain)).stats()
        assert stats.counts["pending"] == 1
        assert stats.processing_ids == ["b"]
        assert stats.failed_ids == ["c"]
