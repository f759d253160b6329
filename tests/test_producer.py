"""
Tests — ReviewProducer.

A successful submit() means exactly one message is on the review queue;
every rejection leaves the queue untouched.
"""
import pytest

from unittest.mock import AsyncMock, MagicMock

from job_queue.message_queue import RedisMessageQueue
from models.schemas import REVIEW_QUEUE, SCHEMA_HEADER, SCHEMA_VERSION, ReviewAction, ReviewMessage
from reviews.errors import AlbumNotFoundError, InvalidReviewActionError, QueueUnavailableError
from reviews.producer import ReviewProducer

ALBUM_ID = "ALBUM-1"


class TestParseAction:

    def test_valid(self):
        assert ReviewProducer.parse_action("like") is ReviewAction.LIKE
        assert ReviewProducer.parse_action("dislike") is ReviewAction.DISLIKE

    @pytest.mark.parametrize("action", ["love", "LIKE", "", "like "])
    def test_invalid(self, action):
        with pytest.raises(InvalidReviewActionError):
            ReviewProducer.parse_action(action)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_accepted_review_is_enqueued_once(self, producer, declared_queue, store):
        message = await producer.submit(ALBUM_ID, "like")

        assert message == ReviewMessage(albumID=ALBUM_ID, action=ReviewAction.LIKE)
        queued = await declared_queue.peek(REVIEW_QUEUE)
        assert len(queued) == 1
        assert ReviewMessage.decode(queued[0].body) == message
        assert queued[0].content_type == "application/json"
        assert queued[0].headers[SCHEMA_HEADER] == SCHEMA_VERSION
        # nothing is persisted on the producer side
        assert await store.list_reviews(ALBUM_ID) == []

    @pytest.mark.asyncio
    async def test_invalid_action_publishes_nothing(self, producer, declared_queue):
        with pytest.raises(InvalidReviewActionError) as exc:
            await producer.submit(ALBUM_ID, "love")
        assert exc.value.http_status == 400
        assert await declared_queue.queue_length(REVIEW_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_unknown_album_publishes_nothing(self, producer, declared_queue):
        with pytest.raises(AlbumNotFoundError) as exc:
            await producer.submit("NOPE", "like")
        assert exc.value.http_status == 404
        assert await declared_queue.queue_length(REVIEW_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_action_checked_before_album(self, producer, store):
        store.album_exists = AsyncMock(return_value=False)
        with pytest.raises(InvalidReviewActionError):
            await producer.submit("NOPE", "meh")
        store.album_exists.assert_not_called()

    @pytest.mark.asyncio
    async def test_album_lookup_failure_is_not_found(self, producer, store, declared_queue):
        store.album_exists = AsyncMock(side_effect=ConnectionError("db down"))
        with pytest.raises(AlbumNotFoundError):
            await producer.submit(ALBUM_ID, "like")
        assert await declared_queue.queue_length(REVIEW_QUEUE) == 0

    @pytest.mark.asyncio
    async def test_broker_failure_is_queue_unavailable(self, store):
        queue = AsyncMock()
        queue.publish.side_effect = QueueUnavailableError("connection refused")
        producer = ReviewProducer(store, queue)
        with pytest.raises(QueueUnavailableError) as exc:
            await producer.submit(ALBUM_ID, "dislike")
        assert exc.value.http_status == 500

    @pytest.mark.asyncio
    async def test_unexpected_publish_error_is_wrapped(self, store):
        queue = AsyncMock()
        queue.publish.side_effect = OSError("broken pipe")
        producer = ReviewProducer(store, queue)
        with pytest.raises(QueueUnavailableError) as exc:
            await producer.submit(ALBUM_ID, "like")
        assert isinstance(exc.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_publishes_to_configured_queue(self, store):
        queue = AsyncMock()
        producer = ReviewProducer(store, queue, queue_name="reviews-staging")
        await producer.submit(ALBUM_ID, "dislike")
        args, kwargs = queue.publish.call_args
        assert args[0] == "reviews-staging"
        assert args[1] == b'{"albumID":"ALBUM-1","action":"dislike"}'
        assert kwargs["headers"] == {SCHEMA_HEADER: SCHEMA_VERSION}

    @pytest.mark.asyncio
    async def test_declare_is_durable(self, store):
        queue = AsyncMock()
        await ReviewProducer(store, queue).declare()
        queue.declare_queue.assert_awaited_once_with(
            REVIEW_QUEUE, durable=True, consumer_group="review-consumers",
        )

    @pytest.mark.asyncio
    async def test_declare_creates_only_the_consumer_group(self, store):
        redis = MagicMock()
        redis.hsetnx = AsyncMock(return_value=1)
        redis.hget = AsyncMock(return_value=b"1")
        redis.xgroup_create = AsyncMock()
        queue = RedisMessageQueue()
        queue._redis = redis

        await ReviewProducer(store, queue, consumer_group="album-reviewers").declare()

        redis.xgroup_create.assert_awaited_once_with(
            REVIEW_QUEUE, "album-reviewers", id="0", mkstream=True,
        )
