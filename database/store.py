"""
SqlAlbumStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Reviews are append-only: add_review() always inserts, so a redelivered
message produces a second row rather than an update.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from sqlalchemy import select, func, exists

from database.models import AlbumRow, ReviewRow, new_album_id
from database.session import get_session, init_db, close_db
from database.store_base import BaseAlbumStore
from models.schemas import ReviewAction

logger = structlog.get_logger()


class SqlAlbumStore(BaseAlbumStore):
    """
    Persistent album store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: str = None):
        self.db_url = db_url

    async def initialize(self) -> None:
        await init_db(self.db_url)

    async def close(self) -> None:
        await close_db()

    # ── Album operations ───────────────────────────────────

    async def create_album(self, image: bytes, profile: Any) -> str:
        album_id = new_album_id()
        async with get_session() as db:
            db.add(AlbumRow(album_id=album_id, image=image, profile=profile))
        logger.info("album_created", album_id=album_id, image_size=len(image or b""))
        return album_id

    async def get_album_profile(self, album_id: str) -> Optional[Any]:
        async with get_session() as db:
            stmt = select(AlbumRow.profile).where(AlbumRow.album_id == album_id)
            result = await db.execute(stmt)
            row = result.first()
            return row[0] if row else None

    async def album_exists(self, album_id: str) -> bool:
        async with get_session() as db:
            stmt = select(exists().where(AlbumRow.album_id == album_id))
            result = await db.execute(stmt)
            return bool(result.scalar())

    # ── Review operations ──────────────────────────────────

    async def add_review(self, album_id: str, action: str) -> int:
        async with get_session() as db:
            row = ReviewRow(album_id=album_id, action=action)
            db.add(row)
            await db.flush()
            return row.id

    async def review_tally(self, album_id: str) -> dict[str, int]:
        async with get_session() as db:
            stmt = (
                select(ReviewRow.action, func.count(ReviewRow.id))
                .where(ReviewRow.album_id == album_id)
                .group_by(ReviewRow.action)
            )
            result = await db.execute(stmt)
            counts = {action: count for action, count in result.all()}
        return {
            "likes": counts.get(ReviewAction.LIKE.value, 0),
            "dislikes": counts.get(ReviewAction.DISLIKE.value, 0),
        }

    async def list_reviews(self, album_id: str, limit: int = 100) -> list[dict[str, Any]]:
        async with get_session() as db:
            stmt = (
                select(ReviewRow)
                .where(ReviewRow.album_id == album_id)
                .order_by(ReviewRow.id)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [row.to_dict() for row in result.scalars()]
