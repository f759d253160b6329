"""
Message Queue — Abstract broker interface with Redis Streams and in-memory backends.

Delivery contract the review pipeline relies on:
  - named durable queue, declared idempotently by producer and consumer
  - at-least-once delivery, explicit per-message settlement
  - ack              → message removed permanently
  - nack(requeue)    → message returned to the queue (optionally after a delay)
  - nack(no requeue) → message dropped permanently
  - dead_letter      → copy parked on "<queue>.dlq", never redelivered

Queue Topology (Redis):
  reviewQueue            — stream, consumer group "review-consumers"
  reviewQueue:delayed    — sorted set of requeued messages waiting out a backoff
  reviewQueue.dlq        — stream of poison / exhausted messages for inspection
  reviewQueue:meta       — hash recording the declared durability

Message fields:
  {
      "body":          raw payload bytes (JSON for reviews),
      "content_type":  e.g. "application/json",
      "attempt":       failed processing attempts so far,
      "h:<name>":      free-form headers (schema version, dead-letter reason, …),
  }
"""
from __future__ import annotations

import asyncio
import base64
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from models.schemas import CONTENT_TYPE
from reviews.errors import QueueUnavailableError

logger = structlog.get_logger()

Handler = Callable[["Delivery"], Awaitable[Any]]

# KEYS: delayed set, stream. ARGV: member, then stream field/value pairs.
# Only the caller whose ZREM succeeds re-adds the entry.
_PROMOTE_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
  return redis.call('XADD', KEYS[2], '*', unpack(ARGV, 2))
end
return false
"""


class QueueDeclarationError(Exception):
    """Queue already exists with different properties."""


def dead_letter_name(queue: str) -> str:
    return f"{queue}.dlq"


# ──────────────────────────────────────────────────────────────
#  Delivery
# ──────────────────────────────────────────────────────────────

@dataclass
class Delivery:
    """One message handed to a consumer, settled via ack()/nack()."""
    queue: str
    body: bytes
    content_type: str = CONTENT_TYPE
    headers: dict[str, str] = field(default_factory=dict)
    delivery_tag: str = ""
    attempt: int = 0
    redelivered: bool = False

    def to_fields(self, attempt: int = None) -> dict[str, Any]:
        fields = {
            "body": self.body,
            "content_type": self.content_type,
            "attempt": str(self.attempt if attempt is None else attempt),
        }
        for k, v in self.headers.items():
            fields[f"h:{k}"] = v
        return fields

    @classmethod
    def from_fields(cls, queue: str, tag: str, fields: dict, redelivered: bool = False) -> Delivery:
        def _s(v: Any) -> str:
            return v.decode("utf-8", errors="replace") if isinstance(v, bytes) else str(v)

        data = {_s(k): v for k, v in fields.items()}
        body = data.get("body", b"")
        if isinstance(body, str):
            body = body.encode("utf-8")
        try:
            attempt = int(_s(data.get("attempt", "0")))
        except ValueError:
            attempt = 0
        headers = {k[2:]: _s(v) for k, v in data.items() if k.startswith("h:")}
        return cls(
            queue=queue,
            body=body,
            content_type=_s(data.get("content_type", CONTENT_TYPE)),
            headers=headers,
            delivery_tag=tag,
            attempt=attempt,
            redelivered=redelivered or attempt > 0,
        )


# ──────────────────────────────────────────────────────────────
#  Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Broker interface shared by the review producer and consumer."""

    _running: bool = False
    _consuming: bool = False

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def declare_queue(self, queue: str, durable: bool = True,
                            consumer_group: str = "default"):
        """Create the queue if missing. Idempotent; mismatched properties raise."""
        ...

    @abstractmethod
    async def publish(self, queue: str, body: bytes, content_type: str = CONTENT_TYPE,
                      headers: dict[str, str] = None):
        """Hand one message to the broker. Does not wait for any consumer."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each
        delivery, one at a time. The handler settles each delivery itself.
        """
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> bool:
        """Acknowledge — the message is removed for good."""
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery, requeue: bool = True, delay_seconds: float = 0) -> bool:
        """Negative-acknowledge — requeue (optionally delayed) or drop."""
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[Delivery]:
        """Look at queued messages without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self, queue: str = None) -> int:
        """Move delayed messages whose time has come back into their queue."""
        ...

    async def dead_letter(self, delivery: Delivery, reason: str, dlq: str = None):
        """Park a copy of the delivery on the dead-letter queue."""
        target = dlq or dead_letter_name(delivery.queue)
        headers = {
            **delivery.headers,
            "x-death-reason": reason,
            "x-original-queue": delivery.queue,
            "x-attempts": str(delivery.attempt),
        }
        await self.publish(target, delivery.body, delivery.content_type, headers)
        logger.warning("message_dead_lettered",
                       queue=delivery.queue,
                       dlq=target,
                       reason=reason,
                       attempt=delivery.attempt)

    async def stats(self, queue: str, dlq: str = None) -> dict[str, Any]:
        return {
            "queue": queue,
            "pending": await self.queue_length(queue),
            "dead_lettered": await self.queue_length(dlq or dead_letter_name(queue)),
            "backend": type(self).__name__,
        }

    def stop(self):
        self._consuming = False


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - The review queue is a stream read through a consumer group, so N
      consumer processes share it and each message goes to one of them
    - Delivered-but-unsettled messages stay in the group's pending list and
      are reclaimed from dead consumers after claim_idle_ms
    - Delayed requeues live in a sorted set until promote_delayed() moves them back
    - The connection pool is long-lived; a failed publish drops the client so
      the next call reconnects
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        publish_timeout: float = 5.0,
        block_ms: int = 2000,
        claim_idle_ms: int = 60000,
        batch_size: int = 10,
        error_backoff: float = 1.0,
    ):
        self._redis_url = redis_url
        self._redis = None
        self._running = False
        self.publish_timeout = publish_timeout
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.batch_size = batch_size
        self.error_backoff = error_backoff
        self._groups: dict[str, str] = {}       # queue → consumer group of this consumer
        self._promote_script = None              # registered on the current client

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=False,
            max_connections=20,
        )
        self._promote_script = None
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1])

    async def close(self):
        self._running = False
        self._consuming = False
        self._promote_script = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self):
        if self._redis is None:
            await self.connect()
        return self._redis

    async def _reset(self):
        """Drop the client after a transport failure; the next call reconnects."""
        client, self._redis = self._redis, None
        self._promote_script = None
        if client is not None:
            try:
                await client.aclose()
            except Exception as e:
                logger.debug("redis_close_failed", error=str(e))

    @staticmethod
    def _delayed_key(queue: str) -> str:
        return f"{queue}:delayed"

    @staticmethod
    def _meta_key(queue: str) -> str:
        return f"{queue}:meta"

    async def declare_queue(self, queue: str, durable: bool = True,
                            consumer_group: str = "default"):
        from redis.exceptions import ResponseError

        r = await self._client()
        flag = b"1" if durable else b"0"
        await r.hsetnx(self._meta_key(queue), "durable", flag)
        recorded = await r.hget(self._meta_key(queue), "durable")
        if recorded is not None and recorded != flag:
            raise QueueDeclarationError(
                f"queue {queue!r} already declared with durable={recorded == b'1'}"
            )
        try:
            await r.xgroup_create(queue, consumer_group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups[queue] = consumer_group
        logger.info("queue_declared", queue=queue, durable=durable, group=consumer_group)

    async def publish(self, queue: str, body: bytes, content_type: str = CONTENT_TYPE,
                      headers: dict[str, str] = None):
        from redis.exceptions import RedisError

        delivery = Delivery(queue=queue, body=body, content_type=content_type,
                            headers=dict(headers or {}))
        try:
            r = await self._client()
            message_id = await asyncio.wait_for(
                r.xadd(queue, delivery.to_fields()),
                timeout=self.publish_timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            await self._reset()
            logger.error("publish_failed", queue=queue, error=str(e) or type(e).__name__)
            raise QueueUnavailableError(f"Failed to publish to queue: {e}") from e
        logger.debug("message_published", queue=queue, message_id=message_id)
        return message_id

    async def consume(
        self,
        queue: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self.declare_queue(queue, consumer_group=consumer_group)
        self._consuming = True
        logger.info("consumer_started",
                    queue=queue,
                    group=consumer_group,
                    consumer=consumer_name)

        # Anything this consumer name held before a restart comes back first.
        backlog = True
        while self._consuming:
            try:
                r = await self._client()
                if backlog:
                    messages = await r.xreadgroup(
                        groupname=consumer_group,
                        consumername=consumer_name,
                        streams={queue: "0"},
                        count=self.batch_size,
                    )
                    entries = messages[0][1] if messages else []
                    if not entries:
                        backlog = False
                        continue
                    await self._dispatch(queue, entries, handler, redelivered=True)
                    continue

                claimed = await self._claim_idle(queue, consumer_group, consumer_name)
                if claimed:
                    await self._dispatch(queue, claimed, handler, redelivered=True)
                    continue

                messages = await r.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=self.batch_size,
                    block=self.block_ms,
                )
                if not messages:
                    continue
                for _stream, entries in messages:
                    await self._dispatch(queue, entries, handler)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await self._reset()
                await asyncio.sleep(self.error_backoff)

    async def _claim_idle(self, queue: str, group: str, consumer: str) -> list:
        if not self.claim_idle_ms:
            return []
        result = await self._redis.xautoclaim(
            queue, group, consumer,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=self.batch_size,
        )
        # redis-py returns [next_id, entries] or [next_id, entries, deleted_ids]
        return [e for e in result[1] if e and e[1]] if result else []

    async def _dispatch(self, queue: str, entries: list, handler: Handler, redelivered: bool = False):
        for message_id, fields in entries:
            tag = message_id.decode() if isinstance(message_id, bytes) else str(message_id)
            if not fields:
                # entry was deleted after delivery; clear it from the pending list
                await self._redis.xack(queue, self._groups.get(queue, "default"), tag)
                continue
            delivery = Delivery.from_fields(queue, tag, fields, redelivered=redelivered)
            try:
                await handler(delivery)
            except Exception as e:
                logger.error("message_handler_error",
                             queue=queue,
                             delivery_tag=tag,
                             error=str(e))
                await self.nack(delivery, requeue=True)

    def _settle(self, pipe, delivery: Delivery):
        group = self._groups.get(delivery.queue, "default")
        pipe.xack(delivery.queue, group, delivery.delivery_tag)
        pipe.xdel(delivery.queue, delivery.delivery_tag)

    async def ack(self, delivery: Delivery) -> bool:
        r = await self._client()
        pipe = r.pipeline(transaction=True)
        self._settle(pipe, delivery)
        acked, _ = await pipe.execute()
        if not acked:
            logger.warning("ack_unknown_delivery", queue=delivery.queue, delivery_tag=delivery.delivery_tag)
            return False
        logger.debug("message_acked", queue=delivery.queue, delivery_tag=delivery.delivery_tag)
        return True

    async def nack(self, delivery: Delivery, requeue: bool = True, delay_seconds: float = 0) -> bool:
        r = await self._client()
        pipe = r.pipeline(transaction=True)
        if requeue and delay_seconds > 0:
            payload = json.dumps({
                "nonce": uuid.uuid4().hex,
                "fields": {
                    k: (base64.b64encode(v).decode() if isinstance(v, bytes) else v)
                    for k, v in delivery.to_fields(attempt=delivery.attempt + 1).items()
                },
            })
            pipe.zadd(self._delayed_key(delivery.queue), {payload: time.time() + delay_seconds})
        elif requeue:
            pipe.xadd(delivery.queue, delivery.to_fields(attempt=delivery.attempt + 1))
        self._settle(pipe, delivery)
        results = await pipe.execute()
        acked = results[-2]
        if not acked:
            logger.warning("nack_unknown_delivery", queue=delivery.queue, delivery_tag=delivery.delivery_tag)
            return False
        logger.info("message_nacked",
                    queue=delivery.queue,
                    delivery_tag=delivery.delivery_tag,
                    requeue=requeue,
                    delay_seconds=delay_seconds)
        return True

    async def queue_length(self, queue: str) -> int:
        r = await self._client()
        return await r.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[Delivery]:
        r = await self._client()
        messages = await r.xrange(queue, count=count)
        return [
            Delivery.from_fields(queue, mid.decode() if isinstance(mid, bytes) else str(mid), fields)
            for mid, fields in messages
        ]

    async def promote_delayed(self, queue: str = None) -> int:
        """Move delayed messages whose time has come back into the stream."""
        queues = [queue] if queue else list(self._groups)
        r = await self._client()
        if self._promote_script is None:
            self._promote_script = r.register_script(_PROMOTE_SCRIPT)
        promoted = 0
        for name in queues:
            key = self._delayed_key(name)
            ready = await r.zrangebyscore(key, "-inf", time.time())
            count = 0
            for payload in ready:
                fields = dict(json.loads(payload)["fields"])
                fields["body"] = base64.b64decode(fields["body"])
                args = [payload]
                for k, v in fields.items():
                    args.extend((k, v))
                # None when another promoter already claimed this entry
                if await self._promote_script(keys=[key, name], args=args) is not None:
                    count += 1
            if count:
                promoted += count
                logger.info("delayed_messages_promoted", queue=name, count=count)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups, nothing survives a restart.
    Unsettled deliveries are requeued on close(), as a broker does when
    a consumer's connection drops.
    """

    def __init__(self, promote_interval: float = 1.0):
        self._queues: dict[str, asyncio.Queue] = {}
        self._declared: dict[str, bool] = {}                  # queue → durable
        self._unacked: dict[str, Delivery] = {}               # delivery_tag → delivery
        self._delayed: list[tuple[float, Delivery]] = []      # (ready_at, delivery)
        self._running = False
        self.promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._running = True
        if self._delayed_promoter_task is None:
            self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        self._consuming = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass
            self._delayed_promoter_task = None
        for delivery in list(self._unacked.values()):
            await self.nack(delivery, requeue=True)

    async def declare_queue(self, queue: str, durable: bool = True,
                            consumer_group: str = "default"):
        existing = self._declared.get(queue)
        if existing is not None and existing != durable:
            raise QueueDeclarationError(
                f"queue {queue!r} already declared with durable={existing}"
            )
        self._declared[queue] = durable
        self._get_queue(queue)
        logger.info("queue_declared", queue=queue, durable=durable)

    async def publish(self, queue: str, body: bytes, content_type: str = CONTENT_TYPE,
                      headers: dict[str, str] = None):
        await self._enqueue(Delivery(
            queue=queue,
            body=body,
            content_type=content_type,
            headers=dict(headers or {}),
        ))
        logger.debug("message_published", queue=queue)

    async def _enqueue(self, delivery: Delivery):
        await self._get_queue(delivery.queue).put(delivery)

    async def consume(
        self,
        queue: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        await self.declare_queue(queue, consumer_group=consumer_group)
        q = self._get_queue(queue)
        self._consuming = True
        logger.info("consumer_started", queue=queue)

        while self._consuming:
            try:
                queued = await asyncio.wait_for(q.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            delivery = self._deliver(queued)
            try:
                await handler(delivery)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("message_handler_error",
                             queue=queue,
                             delivery_tag=delivery.delivery_tag,
                             error=str(e))
                if delivery.delivery_tag in self._unacked:
                    await self.nack(delivery, requeue=True)

    def _deliver(self, queued: Delivery) -> Delivery:
        delivery = Delivery(
            queue=queued.queue,
            body=queued.body,
            content_type=queued.content_type,
            headers=dict(queued.headers),
            delivery_tag=uuid.uuid4().hex,
            attempt=queued.attempt,
            redelivered=queued.redelivered,
        )
        self._unacked[delivery.delivery_tag] = delivery
        return delivery

    async def get(self, queue: str) -> Optional[Delivery]:
        """Pull a single delivery without blocking (basic.get); None when empty."""
        q = self._get_queue(queue)
        if q.empty():
            return None
        return self._deliver(q.get_nowait())

    async def ack(self, delivery: Delivery) -> bool:
        if self._unacked.pop(delivery.delivery_tag, None) is None:
            logger.warning("ack_unknown_delivery", queue=delivery.queue, delivery_tag=delivery.delivery_tag)
            return False
        return True

    async def nack(self, delivery: Delivery, requeue: bool = True, delay_seconds: float = 0) -> bool:
        if self._unacked.pop(delivery.delivery_tag, None) is None:
            logger.warning("nack_unknown_delivery", queue=delivery.queue, delivery_tag=delivery.delivery_tag)
            return False
        if requeue:
            retry = Delivery(
                queue=delivery.queue,
                body=delivery.body,
                content_type=delivery.content_type,
                headers=dict(delivery.headers),
                attempt=delivery.attempt + 1,
                redelivered=True,
            )
            if delay_seconds > 0:
                self._delayed.append((time.time() + delay_seconds, retry))
                self._delayed.sort(key=lambda x: x[0])
            else:
                await self._enqueue(retry)
        logger.info("message_nacked",
                    queue=delivery.queue,
                    delivery_tag=delivery.delivery_tag,
                    requeue=requeue,
                    delay_seconds=delay_seconds)
        return True

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    async def queue_length(self, queue: str) -> int:
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[Delivery]:
        q = self._get_queue(queue)
        items = []
        # asyncio.Queue doesn't support peek natively; drain and re-add
        while not q.empty():
            items.append(q.get_nowait())
        for item in items:
            q.put_nowait(item)
        return items[:count]

    async def promote_delayed(self, queue: str = None, now: float = None) -> int:
        now = time.time() if now is None else now
        ready, waiting = [], []
        for ts, delivery in self._delayed:
            due = ts <= now and (queue is None or delivery.queue == queue)
            (ready if due else waiting).append((ts, delivery))
        if not ready:
            return 0
        self._delayed = waiting

        for _, delivery in ready:
            await self._enqueue(delivery)

        logger.info("delayed_messages_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed messages."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self.promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        _instance = RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            publish_timeout=float(config.get("publish_timeout_seconds", 5.0)),
            block_ms=int(config.get("block_ms", 2000)),
            claim_idle_ms=int(config.get("claim_idle_ms", 60000)),
        )
    else:
        _instance = InMemoryMessageQueue(
            promote_interval=float(config.get("delayed_promote_interval", 1.0)),
        )

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
