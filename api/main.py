"""
FastAPI Application — album upload/retrieval and asynchronous reviews.

Provides:
- Album upload (image + JSON profile) and profile retrieval
- Review submission: validated, then published to the review queue (201 = enqueued)
- Review tallies read back from the store once consumers have caught up
- Health and queue diagnostics

Run:
    uvicorn api.main:app --port 8080
"""
from __future__ import annotations

import dataclasses
import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from config.settings import get_settings
from database.store_factory import create_store
from job_queue.consumer import DelayedRetryPromoter, ReviewConsumer
from job_queue.message_queue import create_message_queue
from models.schemas import AlbumCreated, ReviewAccepted, ReviewTally
from reviews.errors import ReviewServiceError
from reviews.producer import ReviewProducer

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

album_store = create_store(_settings_boot.database)
message_queue = create_message_queue(dataclasses.asdict(_settings_boot.queue))

review_producer = ReviewProducer(
    album_store, message_queue,
    queue_name=_settings_boot.queue.review_queue,
    consumer_group=_settings_boot.queue.consumer_group,
)

# Only used when the consumer runs inside this process.
review_consumer: Optional[ReviewConsumer] = None
retry_promoter: Optional[DelayedRetryPromoter] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global review_consumer, retry_promoter
    settings = get_settings()

    await album_store.initialize()
    await message_queue.connect()
    await review_producer.declare()

    if settings.queue.embedded_consumer:
        review_consumer = ReviewConsumer.from_settings(album_store, message_queue, settings.queue)
        retry_promoter = DelayedRetryPromoter(
            message_queue,
            queue_name=settings.queue.review_queue,
            interval_seconds=settings.queue.delayed_promote_interval,
        )
        await review_consumer.start_background()
        await retry_promoter.start_background()

    logger.info("album_reviews_started",
                queue_backend=type(message_queue).__name__,
                store_backend=type(album_store).__name__,
                embedded_consumer=review_consumer is not None)
    yield

    if review_consumer:
        await review_consumer.stop()
    if retry_promoter:
        await retry_promoter.stop()
    await message_queue.close()
    await album_store.close()
    logger.info("album_reviews_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Album Reviews API",
    description="Album storage with asynchronous like/dislike reviews",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReviewServiceError)
async def review_error_handler(request: Request, exc: ReviewServiceError):
    return JSONResponse(status_code=exc.http_status, content={"msg": exc.public_message})


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue_backend": type(message_queue).__name__,
    }


@app.get("/queue/stats")
async def queue_stats():
    settings = get_settings()
    stats = await message_queue.stats(settings.queue.review_queue, dlq=settings.queue.dlq_name)
    if review_consumer:
        stats["consumer"] = review_consumer.snapshot()
    return stats


# ══════════════════════════════════════════════════════════════
#  ALBUMS
# ══════════════════════════════════════════════════════════════

def _parse_profile(raw: str) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        # Stored as given; profile is opaque to this service.
        return raw


@app.post("/albums", status_code=201, response_model=AlbumCreated)
async def create_album(image: Optional[UploadFile] = File(None), profile: str = Form("")):
    if image is None:
        return JSONResponse(status_code=400, content={"error": "Image is required"})
    image_bytes = await image.read()
    try:
        album_id = await album_store.create_album(image_bytes, _parse_profile(profile))
    except Exception as e:
        logger.error("album_insert_failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "DB insert error"})
    return AlbumCreated(albumID=album_id, imageSize=str(len(image_bytes)))


@app.get("/albums/{album_id}")
async def get_album(album_id: str):
    try:
        profile = await album_store.get_album_profile(album_id)
    except Exception as e:
        logger.error("album_query_failed", album_id=album_id, error=str(e))
        return JSONResponse(status_code=500, content={"error": "DB query error"})
    if profile is None:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    if isinstance(profile, str):
        return Response(content=profile, media_type="application/json")
    return JSONResponse(content=profile)


# ══════════════════════════════════════════════════════════════
#  REVIEWS
# ══════════════════════════════════════════════════════════════

@app.post("/review/{action}/{album_id}", status_code=201, response_model=ReviewAccepted)
async def submit_review(action: str, album_id: str):
    await review_producer.submit(album_id, action)
    return ReviewAccepted()


@app.get("/review/{album_id}", response_model=ReviewTally)
async def get_review_tally(album_id: str):
    if not await album_store.album_exists(album_id):
        return JSONResponse(status_code=404, content={"msg": "Album not found"})
    tally = await album_store.review_tally(album_id)
    return ReviewTally(albumID=album_id, **tally)
