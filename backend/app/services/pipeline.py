"""
Wiring for the inbound email pipeline.

build_pipeline() assembles the queue store, conversation store, responder,
dedup gate and processor from the environment.  The app keeps one Pipeline
for its lifetime; routers reach it through the get_pipeline() dependency.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from app.db import supabase_admin
from app.services.dedup import DedupGate
from app.services.email_processor import EmailProcessor, ProcessorSettings, QueuePoller
from app.services.queue_store import InMemoryQueueStore, QueueStore, SupabaseQueueStore
from app.services.responder import Responder, get_responder
from app.services.thread_resolver import (
    ConversationStore,
    InMemoryConversationStore,
    SupabaseConversationStore,
)

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings: ProcessorSettings
    queue: QueueStore
    conversations: ConversationStore
    processor: EmailProcessor
    poller: QueuePoller


def _build_stores() -> tuple[QueueStore, ConversationStore]:
    backend = os.getenv("QUEUE_BACKEND", "memory").lower().strip()
    if backend == "memory":
        return InMemoryQueueStore(), InMemoryConversationStore()
    if backend == "supabase":
        return SupabaseQueueStore(supabase_admin), SupabaseConversationStore(supabase_admin)
    raise ValueError(
        f"Unknown queue backend {backend!r}. Supported backends: ['memory', 'supabase']"
    )


def build_pipeline(
    settings: Optional[ProcessorSettings] = None,
    queue: Optional[QueueStore] = None,
    conversations: Optional[ConversationStore] = None,
    responder: Optional[Responder] = None,
) -> Pipeline:
    settings = settings or ProcessorSettings.from_env()
    if queue is None or conversations is None:
        default_queue, default_conversations = _build_stores()
        queue = queue or default_queue
        conversations = conversations or default_conversations
    responder = responder or get_responder(timeout=settings.responder_timeout_seconds)

    processor = EmailProcessor(
        queue=queue,
        conversations=conversations,
        responder=responder,
        dedup=DedupGate(
            capacity=settings.dedup_capacity,
            ttl_seconds=settings.dedup_ttl_seconds,
        ),
        settings=settings,
    )
    logger.info(
        f"Inbound pipeline ready: queue={type(queue).__name__}, "
        f"responder={responder.name}, max_attempts={settings.max_attempts}"
    )
    return Pipeline(
        settings=settings,
        queue=queue,
        conversations=conversations,
        processor=processor,
        poller=QueuePoller(processor),
    )


_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """FastAPI dependency returning the process-wide pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    global _pipeline
    _pipeline = pipeline
