"""
Review pipeline — producer side and the shared error taxonomy.

  from reviews.producer import ReviewProducer
  producer = ReviewProducer(store, queue)
  message = await producer.submit("ALBUM-1", "like")
"""
from reviews.errors import (
    ReviewServiceError, InvalidReviewActionError, AlbumNotFoundError,
    QueueUnavailableError, MessageDecodeError, PersistenceError,
)

__all__ = [
    "ReviewServiceError", "InvalidReviewActionError", "AlbumNotFoundError",
    "QueueUnavailableError", "MessageDecodeError", "PersistenceError",
]
