"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - albums:  keyed by the uuid string handed out on upload.
  - reviews: append-only, integer surrogate key, album_id carried loosely
             (no foreign key) so review writes never depend on album rows.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, DateTime, LargeBinary, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_album_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Albums
# ──────────────────────────────────────────────────────────────

class AlbumRow(Base):
    __tablename__ = "albums"

    album_id: Mapped[str] = mapped_column("albumID", String(36), primary_key=True, default=new_album_id)
    image: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    profile: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "albumID": self.album_id,
            "profile": self.profile,
            "imageSize": len(self.image or b""),
        }


# ──────────────────────────────────────────────────────────────
#  Reviews
# ──────────────────────────────────────────────────────────────

class ReviewRow(Base):
    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    album_id: Mapped[str] = mapped_column("albumID", String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(10), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "albumID": self.album_id,
            "action": self.action,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
