"""
Review Producer — validates a review request and hands it to the broker.

The enqueue, not the database write, is what the HTTP caller is told about:
a successful submit() means one message sits in the review queue. Nothing
is written to the store on this path and nothing is retried here; a caller
that gets an error decides for itself whether to try again.
"""
from __future__ import annotations

import structlog

from database.store_base import BaseAlbumStore
from job_queue.message_queue import MessageQueue
from models.schemas import (
    CONTENT_TYPE, REVIEW_QUEUE, SCHEMA_HEADER, SCHEMA_VERSION,
    ReviewAction, ReviewMessage,
)
from reviews.errors import (
    AlbumNotFoundError, InvalidReviewActionError, QueueUnavailableError,
)

logger = structlog.get_logger()


class ReviewProducer:
    """
    Publishes one ReviewMessage per accepted review.

    The broker connection belongs to the process (pooled, long-lived) rather
    than to a single call; the queue backend reconnects after a failed publish.
    """

    def __init__(self, store: BaseAlbumStore, queue: MessageQueue,
                 queue_name: str = REVIEW_QUEUE,
                 consumer_group: str = "review-consumers"):
        self.store = store
        self.queue = queue
        self.queue_name = queue_name
        self.consumer_group = consumer_group

    async def declare(self):
        """Declare the review queue with the durability and group the consumer uses."""
        await self.queue.declare_queue(
            self.queue_name, durable=True, consumer_group=self.consumer_group,
        )

    @staticmethod
    def parse_action(action: str) -> ReviewAction:
        try:
            return ReviewAction(action)
        except ValueError:
            raise InvalidReviewActionError(
                f"Invalid review action {action!r}; expected one of {ReviewAction.values()}"
            ) from None

    async def _album_exists(self, album_id: str) -> bool:
        # A failed lookup is reported like a missing album.
        try:
            return await self.store.album_exists(album_id)
        except Exception as e:
            logger.error("album_lookup_failed", album_id=album_id, error=str(e))
            return False

    async def submit(self, album_id: str, action: str) -> ReviewMessage:
        """
        Validate and enqueue one review.

        Raises:
            InvalidReviewActionError: action is not like/dislike.
            AlbumNotFoundError: album_id is not in the store right now.
            QueueUnavailableError: the broker refused or could not be reached.
        """
        review_action = self.parse_action(action)

        if not album_id or not await self._album_exists(album_id):
            raise AlbumNotFoundError(f"Album not found: {album_id}")

        message = ReviewMessage(albumID=album_id, action=review_action)
        try:
            await self.queue.publish(
                self.queue_name,
                message.encode(),
                content_type=CONTENT_TYPE,
                headers={SCHEMA_HEADER: SCHEMA_VERSION},
            )
        except QueueUnavailableError as e:
            logger.error("review_publish_failed",
                         album_id=album_id, action=review_action.value, error=str(e))
            raise
        except Exception as e:
            logger.error("review_publish_failed",
                         album_id=album_id, action=review_action.value, error=str(e))
            raise QueueUnavailableError(f"Failed to publish to queue: {e}") from e

        logger.info("review_enqueued",
                    album_id=album_id,
                    action=review_action.value,
                    queue=self.queue_name)
        return message
