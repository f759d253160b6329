"""
Async engine and session scope shared by the API process and review consumers.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

SQLite connections run in WAL mode with a busy timeout so the API (album
uploads, tallies) and a separate consumer process (review inserts) can
share one database file.

Usage:
    await init_db()                    # create albums/reviews if missing
    async with get_session() as db:    # commit on exit, rollback on error
        db.add(ReviewRow(album_id=album_id, action="like"))
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql://", "mysql+aiomysql://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """Map a plain database URL onto its async driver."""
    for prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _engine_kwargs(db_url: str) -> dict:
    kwargs = {"echo": get_settings().debug}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        }
        return kwargs

    # Server databases: consumers hold connections for the life of the process
    kwargs.update(
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return kwargs


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
    cursor.close()


def _redacted(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


def get_engine(db_url: str = None) -> AsyncEngine:
    """Return the process-wide engine; the first caller's URL wins."""
    global _engine
    if _engine is not None:
        return _engine

    url = _to_async_url(db_url or get_settings().database.url)
    _engine = create_async_engine(url, **_engine_kwargs(url))
    if _engine.dialect.name == "sqlite":
        event.listen(_engine.sync_engine, "connect", _set_sqlite_pragmas)
    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=_redacted(str(_engine.url)))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: str = None) -> None:
    """Create the albums and reviews tables if they do not exist."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
