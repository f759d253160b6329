"""
Review consumer process.

Usage:
    review-consumer                         # settings from config/settings.yaml
    REVIEWS_CONFIG=/etc/reviews.yaml review-consumer
    python -m job_queue.worker --name worker-2

Start several processes with the same consumer group to scale out; each
one runs a single sequential message loop.
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import signal
import structlog

from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import load_settings, Settings
from database.store_factory import create_store
from job_queue.consumer import DelayedRetryPromoter, ReviewConsumer
from job_queue.message_queue import create_message_queue

logger = structlog.get_logger()


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, max=10), reraise=True)
async def _connect(component, name: str):
    logger.info("worker_connecting", component=name)
    if name == "queue":
        await component.connect()
    else:
        await component.initialize()


async def run_worker(settings: Settings, stop_event: asyncio.Event = None):
    """Initialize the store, connect the broker and consume until stop_event is set."""
    stop_event = stop_event or asyncio.Event()

    store = create_store(settings.database)
    queue = create_message_queue(dataclasses.asdict(settings.queue))

    await _connect(store, "store")
    await _connect(queue, "queue")

    consumer = ReviewConsumer.from_settings(store, queue, settings.queue)
    promoter = DelayedRetryPromoter(
        queue,
        queue_name=settings.queue.review_queue,
        interval_seconds=settings.queue.delayed_promote_interval,
    )

    consumer_task = await consumer.start_background()
    await promoter.start_background()
    logger.info("review_worker_running",
                queue=settings.queue.review_queue,
                backend=type(queue).__name__)

    stop_wait = asyncio.create_task(stop_event.wait())
    done, _ = await asyncio.wait({consumer_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
    if consumer_task in done and not consumer_task.cancelled() and consumer_task.exception():
        logger.error("review_consumer_crashed", error=str(consumer_task.exception()))
    stop_wait.cancel()

    await consumer.stop()
    await promoter.stop()
    await queue.close()
    await store.close()
    logger.info("review_worker_stopped")


def main(argv: list[str] = None):
    parser = argparse.ArgumentParser(description="Drain the review queue into the album store")
    parser.add_argument("--config", help="Path to settings YAML")
    parser.add_argument("--name", help="Consumer name (unique per process)")
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    if args.name:
        settings.queue.consumer_name = args.name

    async def _run():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass  # Windows
        await run_worker(settings, stop_event)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
