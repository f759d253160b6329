"""
Review Consumer — Drains the review queue into the album store.

Runs as a single sequential loop per process. For horizontal scaling,
start more processes with the same consumer_group; the broker hands each
message to one of them.

Per-message state machine:

  Received ──▶ Decoding ──┬──▶ DecodeFailed ──▶ NackedDiscard   (poison, dead-lettered)
                          │
                          └──▶ Persisting ──┬──▶ PersistFailed ──┬──▶ NackedRequeue  (backoff)
                                            │                    └──▶ NackedDiscard  (attempts exhausted, dead-lettered)
                                            └──▶ Persisted ──▶ Acked

Topology:
  ┌──────────────┐       ┌─────────────────┐       ┌────────────┐
  │ API producer │──pub──▶│ reviewQueue     │──────▶│  Consumer  │──▶ reviews table
  └──────────────┘       └─────────────────┘       └─────┬──────┘
                                  ▲                       │
                         ┌────────┴────────┐              │
                         │ delayed retries  │◀── nack ────┤
                         └─────────────────┘              │
                         ┌─────────────────┐              │
                         │ reviewQueue.dlq  │◀── poison / │
                         └─────────────────┘    exhausted ┘
"""
from __future__ import annotations

import asyncio
import structlog
from collections import Counter
from enum import Enum
from typing import Optional

from database.store_base import BaseAlbumStore
from job_queue.message_queue import Delivery, MessageQueue, dead_letter_name
from models.schemas import REVIEW_QUEUE, ReviewMessage
from reviews.errors import MessageDecodeError, PersistenceError

logger = structlog.get_logger()


class ConsumerState(str, Enum):
    RECEIVED = "received"
    DECODING = "decoding"
    DECODE_FAILED = "decode_failed"
    PERSISTING = "persisting"
    PERSIST_FAILED = "persist_failed"
    PERSISTED = "persisted"
    ACKED = "acked"
    NACKED_REQUEUE = "nacked_requeue"
    NACKED_DISCARD = "nacked_discard"


TERMINAL_STATES = {
    ConsumerState.ACKED,
    ConsumerState.NACKED_REQUEUE,
    ConsumerState.NACKED_DISCARD,
}


def retry_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff for the attempt-th failure, capped at maximum."""
    if base <= 0:
        return 0.0
    return min(base * (2 ** attempt), maximum)


class ReviewConsumer:
    """
    Consumes review messages and persists them as review records.

    Usage:
        consumer = ReviewConsumer(store, queue)
        await consumer.start()             # blocks, runs until stop()
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        store: BaseAlbumStore,
        queue: MessageQueue,
        queue_name: str = REVIEW_QUEUE,
        dead_letter_queue: str = "",
        consumer_group: str = "review-consumers",
        consumer_name: str = "",
        max_attempts: int = 5,
        retry_backoff_base: float = 1.0,
        retry_backoff_max: float = 60.0,
        persist_timeout: Optional[float] = 30.0,
    ):
        self.store = store
        self.queue = queue
        self.queue_name = queue_name
        self.dead_letter_queue = dead_letter_queue or dead_letter_name(queue_name)
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.max_attempts = max_attempts
        self.retry_backoff_base = retry_backoff_base
        self.retry_backoff_max = retry_backoff_max
        self.persist_timeout = persist_timeout
        self.stats: Counter = Counter()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, store: BaseAlbumStore, queue: MessageQueue, queue_config) -> ReviewConsumer:
        return cls(
            store,
            queue,
            queue_name=queue_config.review_queue,
            dead_letter_queue=queue_config.dlq_name,
            consumer_group=queue_config.consumer_group,
            consumer_name=queue_config.consumer_name,
            max_attempts=queue_config.max_attempts,
            retry_backoff_base=queue_config.retry_backoff_base,
            retry_backoff_max=queue_config.retry_backoff_max,
            persist_timeout=queue_config.persist_timeout_seconds or None,
        )

    async def start(self):
        """Declare the queue, then consume — blocks until stop() is called."""
        await self.queue.declare_queue(
            self.queue_name, durable=True, consumer_group=self.consumer_group,
        )
        logger.info("review_consumer_starting",
                    queue=self.queue_name,
                    group=self.consumer_group,
                    max_attempts=self.max_attempts)

        await self.queue.consume(
            queue=self.queue_name,
            handler=self.handle,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start(), name="review_consumer")
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self.queue.stop()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("review_consumer_task_failed", error=str(e))
        self._tasks.clear()
        logger.info("review_consumer_stopped", **self.snapshot())

    def snapshot(self) -> dict[str, int]:
        return {state.value: self.stats[state] for state in TERMINAL_STATES}

    # ── State machine ─────────────────────────────────────

    def _enter(self, state: ConsumerState, delivery: Delivery) -> ConsumerState:
        self.stats[state] += 1
        logger.debug("review_state", state=state.value, delivery_tag=delivery.delivery_tag)
        return state

    async def handle(self, delivery: Delivery) -> ConsumerState:
        """Drive one delivery from Received to a terminal state and settle it."""
        self._enter(ConsumerState.RECEIVED, delivery)

        self._enter(ConsumerState.DECODING, delivery)
        try:
            review = ReviewMessage.decode(delivery.body)
        except MessageDecodeError as e:
            self._enter(ConsumerState.DECODE_FAILED, delivery)
            logger.error("review_decode_failed",
                         delivery_tag=delivery.delivery_tag,
                         error=str(e))
            return await self._discard(delivery, reason=f"decode_failed: {e}")

        self._enter(ConsumerState.PERSISTING, delivery)
        try:
            review_id = await self._persist(review)
        except PersistenceError as e:
            self._enter(ConsumerState.PERSIST_FAILED, delivery)
            logger.warning("review_persist_failed",
                           album_id=review.album_id,
                           action=review.action.value,
                           attempt=delivery.attempt + 1,
                           error=str(e))
            return await self._retry(delivery, reason=str(e))

        self._enter(ConsumerState.PERSISTED, delivery)
        await self.queue.ack(delivery)
        logger.info("review_saved",
                    album_id=review.album_id,
                    action=review.action.value,
                    review_id=review_id,
                    redelivered=delivery.redelivered)
        return self._enter(ConsumerState.ACKED, delivery)

    async def _persist(self, review: ReviewMessage) -> int:
        write = self.store.add_review(review.album_id, review.action.value)
        try:
            if self.persist_timeout:
                return await asyncio.wait_for(write, timeout=self.persist_timeout)
            return await write
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"store write timed out after {self.persist_timeout}s") from e
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

    async def _retry(self, delivery: Delivery, reason: str) -> ConsumerState:
        attempts = delivery.attempt + 1
        if self.max_attempts and attempts >= self.max_attempts:
            logger.error("review_retries_exhausted",
                         delivery_tag=delivery.delivery_tag,
                         attempts=attempts)
            return await self._discard(
                delivery, reason=f"persist_failed after {attempts} attempts: {reason}",
            )

        delay = retry_delay(delivery.attempt, self.retry_backoff_base, self.retry_backoff_max)
        await self.queue.nack(delivery, requeue=True, delay_seconds=delay)
        return self._enter(ConsumerState.NACKED_REQUEUE, delivery)

    async def _discard(self, delivery: Delivery, reason: str) -> ConsumerState:
        # The delivery is dropped even when the dead-letter copy cannot be written.
        try:
            await self.queue.dead_letter(delivery, reason=reason, dlq=self.dead_letter_queue)
        except Exception as e:
            logger.error("dead_letter_failed",
                         delivery_tag=delivery.delivery_tag,
                         dlq=self.dead_letter_queue,
                         reason=reason,
                         error=str(e))
        await self.queue.nack(delivery, requeue=False)
        return self._enter(ConsumerState.NACKED_DISCARD, delivery)


# ──────────────────────────────────────────────────────────────
#  Delayed Retry Promoter
# ──────────────────────────────────────────────────────────────

class DelayedRetryPromoter:
    """
    Background task that periodically moves requeued messages whose
    backoff has elapsed back into the review queue.

    For Redis: each due entry is claimed and re-added by one atomic script,
    so several workers can run a promoter against the same queue.
    For in-memory: already handled inside InMemoryMessageQueue.
    """

    def __init__(self, queue: MessageQueue, queue_name: str = REVIEW_QUEUE,
                 interval_seconds: float = 1.0):
        self.queue = queue
        self.queue_name = queue_name
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run(), name="delayed_retry_promoter")
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed(self.queue_name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
