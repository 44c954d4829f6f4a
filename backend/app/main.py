"""
Featherweight Inbound API
FastAPI application that receives inbound email webhooks, queues them, and
answers each message from a background poller.
"""

import logging
import os

from fastapi import FastAPI, HTTPException

from app.routers import email_intake
from app.services.pipeline import get_pipeline

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Featherweight Inbound API",
    description="Inbound email ingestion, threading and reply pipeline",
    version="0.1.0",
)

# Include routers
app.include_router(email_intake.router, prefix="/api/email-intake", tags=["email-intake"])


@app.on_event("startup")
async def start_queue_poller() -> None:
    """
    Start the background queue poller unless EMAIL_POLLER_ENABLED=false.

    The first tick also returns items left in processing by a previous run
    to the retry path.
    """
    pipeline = get_pipeline()
    if not pipeline.settings.poller_enabled:
        logger.info("Queue poller disabled (EMAIL_POLLER_ENABLED=false)")
        return
    pipeline.poller.start()
    logger.info(
        f"Featherweight Inbound API running on port {os.getenv('HOST_PORT', '8000')}, "
        f"polling every {pipeline.poller.interval}s"
    )


@app.on_event("shutdown")
async def stop_queue_poller() -> None:
    pipeline = get_pipeline()
    if pipeline.poller.running:
        await pipeline.poller.stop()


@app.get("/")
async def root():
    return {"message": "Featherweight Inbound API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/queue")
async def health_queue():
    """
    Check that the queue store answers and the poller is alive.

    Returns 503 when the store cannot be read.
    """
    pipeline = get_pipeline()
    try:
        stats = pipeline.queue.stats()
    except Exception as exc:
        logger.error(f"Queue health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Queue store unreachable: {str(exc)}",
        )
    return {
        "status": "ok",
        "backend": type(pipeline.queue).__name__,
        "poller_running": pipeline.poller.running,
        "counts": stats.counts,
    }
