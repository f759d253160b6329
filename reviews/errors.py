"""
Error taxonomy for the review pipeline.

Producer-side errors are reported synchronously to the HTTP caller.
Consumer-side errors decide whether a delivery is dropped or requeued.
"""
from __future__ import annotations


class ReviewServiceError(Exception):
    """Base class for all review pipeline errors."""
    http_status: int = 500
    public_message: str = "Internal error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


# ── Producer side ─────────────────────────────────────────

class InvalidReviewActionError(ReviewServiceError):
    http_status = 400
    public_message = "Invalid review action"


class AlbumNotFoundError(ReviewServiceError):
    http_status = 404
    public_message = "Album not found"


class QueueUnavailableError(ReviewServiceError):
    """Broker unreachable, channel failure or publish failure."""
    http_status = 500
    public_message = "Failed to publish to queue"


# ── Consumer side ─────────────────────────────────────────

class MessageDecodeError(ReviewServiceError):
    """Queue payload could not be decoded into a review. Never retried."""
    http_status = 422
    public_message = "Malformed review message"


class PersistenceError(ReviewServiceError):
    """Review could not be written to the store. Presumed transient."""
    http_status = 503
    public_message = "Review store unavailable"
