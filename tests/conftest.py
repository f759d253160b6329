"""Shared test fixtures for the album review service."""
import pytest
import pytest_asyncio

from database.store_memory import InMemoryAlbumStore
from job_queue.consumer import ReviewConsumer
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import REVIEW_QUEUE
from reviews.producer import ReviewProducer

ALBUM_ID = "ALBUM-1"


@pytest_asyncio.fixture
async def store() -> InMemoryAlbumStore:
    """Memory store holding one album, ALBUM-1."""
    s = InMemoryAlbumStore()
    await s.put_album(ALBUM_ID, b"\x89PNG", {"artist": "Sex Pistols", "title": "Never Mind", "year": "1977"})
    return s


@pytest_asyncio.fixture
async def queue():
    q = InMemoryMessageQueue(promote_interval=0.05)
    await q.connect()
    yield q
    q.stop()
    await q.close()


@pytest_asyncio.fixture
async def declared_queue(queue):
    await queue.declare_queue(REVIEW_QUEUE, durable=True)
    return queue


@pytest.fixture
def producer(store, declared_queue) -> ReviewProducer:
    return ReviewProducer(store, declared_queue)


@pytest.fixture
def consumer(store, declared_queue) -> ReviewConsumer:
    return ReviewConsumer(
        store,
        declared_queue,
        max_attempts=3,
        retry_backoff_base=0.0,
        persist_timeout=1.0,
    )
