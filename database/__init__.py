"""
Database layer — Album and review persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  await store.initialize()
  exists = await store.album_exists("ALBUM-1")
"""
from database.models import Base, AlbumRow, ReviewRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseAlbumStore
from database.store import SqlAlbumStore
from database.store_memory import InMemoryAlbumStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "AlbumRow", "ReviewRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseAlbumStore",
    # Store backends
    "SqlAlbumStore", "InMemoryAlbumStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
