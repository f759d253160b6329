"""
Abstract Album Store — Interface for all storage backends.

Implementations:
  - SqlAlbumStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryAlbumStore (dict-based, single-process, no persistence)

The producer only needs album_exists(); the consumer only needs add_review().
Everything else backs the synchronous album endpoints.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class BaseAlbumStore(ABC):
    """Interface that all album store backends must implement."""

    async def initialize(self) -> None:
        """Prepare the backend (schema creation etc.). Idempotent."""
        return None

    async def close(self) -> None:
        return None

    # ── Albums ────────────────────────────────────────────────

    @abstractmethod
    async def create_album(self, image: bytes, profile: Any) -> str:
        """Store an album and return its new albumID."""
        ...

    @abstractmethod
    async def get_album_profile(self, album_id: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def album_exists(self, album_id: str) -> bool:
        ...

    # ── Reviews ───────────────────────────────────────────────

    @abstractmethod
    async def add_review(self, album_id: str, action: str) -> int:
        """Append one review record and return its surrogate key."""
        ...

    @abstractmethod
    async def review_tally(self, album_id: str) -> dict[str, int]:
        """Return {"likes": n, "dislikes": m} for an album."""
        ...

    @abstractmethod
    async def list_reviews(self, album_id: str, limit: int = 100) -> list[dict[str, Any]]:
        ...
