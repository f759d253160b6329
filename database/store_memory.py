"""
InMemoryAlbumStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlAlbumStore
  - Thread-safe via asyncio (single event loop)
  - All data lost on process restart
  - fail_writes switch to simulate a store outage
"""
from __future__ import annotations

import itertools
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.models import new_album_id
from database.store_base import BaseAlbumStore
from models.schemas import ReviewAction

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryAlbumStore(BaseAlbumStore):
    """Same interface as SqlAlbumStore; rows are plain dicts."""

    def __init__(self):
        self._albums: dict[str, dict] = {}      # albumID → {"image", "profile"}
        self._reviews: list[dict] = []          # append-only
        self._ids = itertools.count(1)
        self.fail_writes = False
        logger.info("inmemory_store_initialized")

    # ── Albums ────────────────────────────────────────────

    async def create_album(self, image: bytes, profile: Any) -> str:
        album_id = new_album_id()
        await self.put_album(album_id, image, profile)
        return album_id

    async def put_album(self, album_id: str, image: bytes = b"", profile: Any = None) -> None:
        """Store an album under a caller-chosen ID (fixtures, imports)."""
        self._albums[album_id] = {
            "image": image,
            "profile": profile if profile is not None else {},
            "created_at": _utcnow(),
        }

    async def get_album_profile(self, album_id: str) -> Optional[Any]:
        album = self._albums.get(album_id)
        return album["profile"] if album else None

    async def album_exists(self, album_id: str) -> bool:
        return album_id in self._albums

    # ── Reviews ───────────────────────────────────────────

    async def add_review(self, album_id: str, action: str) -> int:
        if self.fail_writes:
            raise ConnectionError("review store unavailable")
        review_id = next(self._ids)
        self._reviews.append({
            "id": review_id,
            "albumID": album_id,
            "action": action,
            "created_at": _utcnow().isoformat(),
        })
        return review_id

    async def review_tally(self, album_id: str) -> dict[str, int]:
        actions = [r["action"] for r in self._reviews if r["albumID"] == album_id]
        return {
            "likes": actions.count(ReviewAction.LIKE.value),
            "dislikes": actions.count(ReviewAction.DISLIKE.value),
        }

    async def list_reviews(self, album_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return [dict(r) for r in self._reviews if r["albumID"] == album_id][:limit]
