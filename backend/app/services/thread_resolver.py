"""
Conversation thread resolver and conversation storage.

resolve_thread() is the only code that decides which conversation a message
belongs to.  It asks a lookup callable for the thread that already holds the
In-Reply-To id (falling back to the References chain, newest first) and
either extends that thread or starts a new one.

Messages without a Message-ID get a locally generated key so they still
occupy a slot in their thread.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.models.conversation import ConversationThread
from app.models.inbound_email import ExtractedEmail
from app.services.errors import QueueStoreError
from app.services.threading_headers import reference_ids

logger = logging.getLogger(__name__)


ThreadLookup = Callable[[str], Optional[ConversationThread]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def message_key(email: ExtractedEmail) -> str:
    return email.message_id or f"local-{uuid.uuid4().hex}"


def _parent_ids(email: ExtractedEmail) -> list[str]:
    """Candidate parent ids: In-Reply-To, then References newest first."""
    candidates: list[str] = []
    if email.in_reply_to:
        candidates.append(email.in_reply_to)
    for ref in reversed(reference_ids(email.references)):
        if ref not in candidates:
            candidates.append(ref)
    return candidates


def resolve_thread(
    email: ExtractedEmail,
    lookup_by_message_id: ThreadLookup,
    now: Optional[datetime] = None,
    key: Optional[str] = None,
) -> ConversationThread:
    """
    Return the thread `email` belongs to, with its key appended.

    Pass `key` when the caller already holds the message key (it must be the
    same one later handed to ConversationStore.save).  The returned thread is
    a new object; the caller persists it.
    """
    key = key or message_key(email)

    for parent_id in _parent_ids(email):
        if parent_id == email.message_id:
            continue
        existing = lookup_by_message_id(parent_id)
        if existing is None:
            continue
        thread = existing.model_copy(deep=True)
        if not thread.contains(key):
            thread.message_ids.append(key)
        logger.info(
            f"Message {key} joins conversation {thread.conversation_id} "
            f"(parent {parent_id}, {len(thread.message_ids)} messages)"
        )
        return thread

    thread = ConversationThread(
        conversation_id=str(uuid.uuid4()),
        message_ids=[key],
        created_at=now or _utcnow(),
    )
    logger.info(f"Message {key} starts conversation {thread.conversation_id}")
    return thread


# ---------------------------------------------------------------------------
# Conversation storage
# ---------------------------------------------------------------------------

class ConversationStore(ABC):
    """Persistence boundary for conversation threads and their messages."""

    @abstractmethod
    def find_by_message_id(self, message_id: str) -> Optional[ConversationThread]:
        """Thread holding message_id; the earliest-created one on a tie."""

    @abstractmethod
    def save(
        self,
        thread: ConversationThread,
        email: ExtractedEmail,
        message_id: str,
    ) -> ConversationThread:
        """Persist thread and record email, keyed by message_id, as a member."""

    @abstractmethod
    def history(self, conversation_id: str) -> list[ExtractedEmail]:
        """Messages already in the conversation, in arrival order."""


class InMemoryConversationStore(ConversationStore):
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._threads: dict[str, ConversationThread] = {}
        # message id -> [(thread created_at, conversation_id)]
        self._index: dict[str, list[tuple[datetime, str]]] = {}
        self._messages: dict[str, list[ExtractedEmail]] = {}
        self._lock = threading.Lock()

    def find_by_message_id(self, message_id: str) -> Optional[ConversationThread]:
        with self._lock:
            owners = self._index.get(message_id)
            if not owners:
                return None
            _, conversation_id = min(owners, key=lambda owner: owner[0])
            return self._threads[conversation_id].model_copy(deep=True)

    def save(
        self,
        thread: ConversationThread,
        email: ExtractedEmail,
        message_id: str,
    ) -> ConversationThread:
        with self._lock:
            self._threads[thread.conversation_id] = thread.model_copy(deep=True)
            for member_id in [*thread.message_ids, message_id]:
                owners = self._index.setdefault(member_id, [])
                if not any(owner[1] == thread.conversation_id for owner in owners):
                    owners.append((thread.created_at, thread.conversation_id))
            self._messages.setdefault(thread.conversation_id, []).append(
                email.model_copy(deep=True)
            )
        return thread

    def history(self, conversation_id: str) -> list[ExtractedEmail]:
        with self._lock:
            return [m.model_copy(deep=True) for m in self._messages.get(conversation_id, [])]


class SupabaseConversationStore(ConversationStore):
    """
    Threads in the conversations table, messages in conversation_messages.

    conversations:          id, message_ids (jsonb), created_at
    conversation_messages:  id, conversation_id, message_id, sender, subject,
                            body, in_reply_to, references, created_at
    """

    THREADS_TABLE = "conversations"
    MESSAGES_TABLE = "conversation_messages"

    def __init__(self, client: Any, clock: Callable[[], datetime] = _utcnow):
        if client is None:
            raise QueueStoreError(
                "Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY)"
            )
        self._client = client
        self._clock = clock

    def _execute(self, action: str, query) -> list[dict]:
        try:
            result = query.execute()
        except Exception as e:
            logger.error(f"Conversation {action} failed: {e}")
            raise QueueStoreError(f"Conversation {action} failed: {e}") from e
        return result.data or []

    def find_by_message_id(self, message_id: str) -> Optional[ConversationThread]:
        rows = self._execute(
            "lookup",
            self._client.table(self.MESSAGES_TABLE)
            .select("conversation_id, created_at")
            .eq("message_id", message_id)
            .order("created_at")
            .limit(1),
        )
        if not rows:
            return None
        threads = self._execute(
            "lookup",
            self._client.table(self.THREADS_TABLE)
            .select("*")
            .eq("id", rows[0]["conversation_id"]),
        )
        if not threads:
            return None
        row = threads[0]
        return ConversationThread(
            conversation_id=str(row["id"]),
            message_ids=row.get("message_ids") or [],
            created_at=row["created_at"],
        )

    def save(
        self,
        thread: ConversationThread,
        email: ExtractedEmail,
        message_id: str,
    ) -> ConversationThread:
        self._execute(
            "save",
            self._client.table(self.THREADS_TABLE).upsert({
                "id": thread.conversation_id,
                "message_ids": thread.message_ids,
                "created_at": thread.created_at.isoformat(),
            }),
        )
        self._execute(
            "save",
            self._client.table(self.MESSAGES_TABLE).insert({
                "id": str(uuid.uuid4()),
                "conversation_id": thread.conversation_id,
                "message_id": message_id,
                "sender": email.sender,
                "subject": email.subject,
                "body": email.body,
                "in_reply_to": email.in_reply_to,
                "references": email.references,
                "created_at": self._clock().isoformat(),
            }),
        )
        return thread

    def history(self, conversation_id: str) -> list[ExtractedEmail]:
        rows = self._execute(
            "history",
            self._client.table(self.MESSAGES_TABLE)
            .select("*")
            .eq("conversation_id", conversation_id)
            .order("created_at"),
        )
        return [
            ExtractedEmail(
                sender=row.get("sender") or "",
                subject=row.get("subject") or "",
                body=row.get("body") or "",
                message_id=row.get("message_id"),
                in_reply_to=row.get("in_reply_to"),
                references=row.get("references"),
            )
            for row in rows
        ]
