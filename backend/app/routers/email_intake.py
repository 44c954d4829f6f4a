"""
Email intake router.

Receives inbound email webhooks from the mail relay and queues them for the
background poller.  Nothing is parsed here beyond classifying the payload
kind; extraction, threading and the reply all happen when the item is
dequeued, so the relay always gets a fast acknowledgment.

Environment variables
---------------------
INBOUND_WEBHOOK_SECRET    Shared secret checked in the X-Webhook-Secret header.
                          When unset, webhook auth is disabled (a warning is
                          logged on every request).

Endpoints:
  POST /inbound   relay webhook, raw body (auth: X-Webhook-Secret)
  GET  /queue     queue counts and stuck item ids (auth: X-Webhook-Secret)
"""

import hmac
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from app.models.email_queue import QueueStats
from app.services.errors import QueueStoreError
from app.services.inbound_email_adapter import build_delivery
from app.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Webhook authentication dependency
# ---------------------------------------------------------------------------

def _get_webhook_secret() -> str:
    return os.getenv("INBOUND_WEBHOOK_SECRET") or ""


def _verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None),
) -> None:
    """
    Verify that the request carries the configured shared secret.

    Raises 401 if a secret is configured and the header is missing or does
    not match.
    """
    expected = _get_webhook_secret()
    if not expected:
        logger.warning(
            "No webhook secret configured (INBOUND_WEBHOOK_SECRET); "
            "accepting unauthenticated inbound request"
        )
        return

    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/inbound")
async def receive_inbound_email(
    request: Request,
    _: None = Depends(_verify_webhook_secret),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    """
    Inbound email webhook receiver.

    Accepts the raw request body (multipart/form-data from the relay, a JSON
    object, or a raw RFC-822 message) and appends it to the processing queue.

    Always returns 200 so the relay does not redeliver; a delivery that could
    not be queued is reported with queued=false and logged.
    """
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    delivery = build_delivery(body, content_type)

    try:
        item = pipeline.queue.enqueue(delivery)
    except QueueStoreError as exc:
        logger.error(f"Could not queue inbound email ({len(body)} bytes): {exc}")
        return {"received": True, "queued": False, "queue_id": None}

    logger.info(f"Queued inbound email {item.id} ({delivery.kind.value}, {len(body)} bytes)")
    return {"received": True, "queued": True, "queue_id": item.id}


@router.get("/queue", response_model=QueueStats)
async def get_queue_stats(
    _: None = Depends(_verify_webhook_secret),
    pipeline: Pipeline = Depends(get_pipeline),
) -> QueueStats:
    """Counts per status plus the ids of processing (possibly stuck) and failed items."""
    try:
        return pipeline.queue.stats()
    except QueueStoreError as exc:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {exc}")
