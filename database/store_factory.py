"""
Album store selection.

``database.store_backend`` decides where albums and reviews live. "sql" keeps
them in the database named by ``database.url``; "memory" keeps them in this
process only, which is what tests and local runs use.

The API process and the standalone worker each hold one store for their whole
lifetime, so the first create_store() call wins and later calls return it.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseAlbumStore

logger = structlog.get_logger()

STORE_BACKENDS = ("sql", "memory")

_instance: Optional[BaseAlbumStore] = None


def _build(cfg: DatabaseConfig) -> BaseAlbumStore:
    if cfg.store_backend == "sql":
        from database.store import SqlAlbumStore
        return SqlAlbumStore(db_url=cfg.url)

    from database.store_memory import InMemoryAlbumStore
    return InMemoryAlbumStore()


def create_store(cfg: Optional[DatabaseConfig] = None) -> BaseAlbumStore:
    """
    Return the process store, building it from cfg on first use.

    Without cfg an in-memory store is built. An unknown backend name raises
    ValueError rather than silently falling back to memory.
    """
    global _instance
    if _instance is not None:
        return _instance

    cfg = cfg or DatabaseConfig(store_backend="memory")
    if cfg.store_backend not in STORE_BACKENDS:
        raise ValueError(
            f"unknown store_backend {cfg.store_backend!r}, expected one of {', '.join(STORE_BACKENDS)}"
        )

    _instance = _build(cfg)
    logger.info("store_created", backend=cfg.store_backend)
    return _instance


def get_store() -> BaseAlbumStore:
    return create_store()


def reset_store() -> None:
    """Forget the process store so the next create_store() builds a fresh one."""
    global _instance
    _instance = None
