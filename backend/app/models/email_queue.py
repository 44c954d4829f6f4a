"""
Pydantic models for the inbound email processing queue.

Lifecycle of a QueueItem:

    pending -> processing -> completed
                          -> pending   (retryable failure, attempts remain)
                          -> failed    (attempts exhausted, or permanent)

completed and failed are terminal.  Items are never deleted; they are kept
for audit.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from app.models.inbound_email import RawDelivery


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED})

# Allowed status transitions.  Anything not listed is rejected by the stores.
ALLOWED_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.PROCESSING: frozenset(
        {QueueStatus.COMPLETED, QueueStatus.PENDING, QueueStatus.FAILED}
    ),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.FAILED: frozenset(),
}


class QueueItem(BaseModel):
    """One queued webhook delivery and its processing history."""

    id: str
    payload: RawDelivery
    status: QueueStatus = QueueStatus.PENDING
    attempt_count: int = 0
    created_at: datetime
    updated_at: datetime
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class QueueStats(BaseModel):
    """Response body for GET /queue."""

    counts: dict[str, int]
    processing_ids: list[str] = []
    failed_ids: list[str] = []
