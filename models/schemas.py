"""
Core data models for the album review service.

The review wire schema lives here so the producer (API process) and the
consumer (worker process) share one versioned contract: queue name,
content type, schema version and the message body itself.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from reviews.errors import MessageDecodeError


# ──────────────────────────────────────────────────────────────
#  Queue contract
# ──────────────────────────────────────────────────────────────

REVIEW_QUEUE = "reviewQueue"
CONTENT_TYPE = "application/json"
SCHEMA_VERSION = "review.v1"
SCHEMA_HEADER = "schema"


class ReviewAction(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"

    @classmethod
    def values(cls) -> list[str]:
        return [a.value for a in cls]


# ──────────────────────────────────────────────────────────────
#  ReviewMessage — one like/dislike on its way to the consumer
# ──────────────────────────────────────────────────────────────

class ReviewMessage(BaseModel):
    """
    A single review as carried by the broker queue.

    Immutable once built. It has no identity beyond its content, so a
    redelivered copy is indistinguishable from the original.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    album_id: str = Field(alias="albumID", min_length=1)
    action: ReviewAction

    def encode(self) -> bytes:
        return json.dumps(
            {"albumID": self.album_id, "action": self.action.value},
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def decode(cls, body: Union[bytes, str]) -> ReviewMessage:
        """Parse a queue payload; any structural problem is a MessageDecodeError."""
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise MessageDecodeError(f"payload is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MessageDecodeError(f"payload must be a JSON object, got {type(data).__name__}")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MessageDecodeError(f"payload does not match {SCHEMA_VERSION}: {e}") from e


# ──────────────────────────────────────────────────────────────
#  API models
# ──────────────────────────────────────────────────────────────


class AlbumCreated(BaseModel):
    albumID: str
    imageSize: str


class ReviewAccepted(BaseModel):
    msg: str = "Review accepted"


class ReviewTally(BaseModel):
    albumID: str
    likes: int = 0
    dislikes: int = 0
