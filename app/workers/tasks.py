"""
Celery Tasks for the outbound message queue

drain_message_queue runs the delivery worker in batch mode from beat,
release_stale_messages recovers claims abandoned by a crashed worker.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.db.database import create_task_engine, get_task_session, session_maker
from app.domain.services.message_queue_service import MessageQueueService
from app.workers.delivery_worker import DeliveryWorker, SessionFactory, WorkerConfig, drain

logger = get_logger(__name__)


def _shutdown_loop(loop: asyncio.AbstractEventLoop) -> None:
    """ביטול tasks שנשארו וסגירת הלולאה — בלי זה asyncpg משאיר חיבורים פתוחים"""
    try:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.run_until_complete(loop.shutdown_asyncgens())
    finally:
        asyncio.set_event_loop(None)
        loop.close()


def run_async(coro):
    """
    הרצת coroutine מתוך task סינכרוני של Celery.

    כל הרצה מקבלת event loop חדש ו-correlation ID משלה.
    """
    set_correlation_id()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        _shutdown_loop(loop)


@log_async_operation("drain_message_queue")
async def _drain_message_queue(
    session_factory: SessionFactory | None = None,
    worker: DeliveryWorker | None = None,
) -> dict[str, int]:
    """
    Process up to WORKER_DRAIN_BATCH_SIZE messages.

    One engine per task run, shared by all iterations of the batch.
    """
    task_engine = None
    if worker is None and session_factory is None:
        task_engine = create_task_engine()
        session_factory = session_maker(task_engine)

    try:
        if worker is None:
            worker = DeliveryWorker(
                session_factory=session_factory,
                config=WorkerConfig.from_settings(),
            )
        counts = await drain(worker, settings.WORKER_DRAIN_BATCH_SIZE)
    finally:
        if task_engine is not None:
            await task_engine.dispose()

    processed = sum(v for k, v in counts.items() if k != "idle")
    if processed:
        logger.info("Message queue drained", extra_data=counts)
    return counts


@log_async_operation("release_stale_messages")
async def _release_stale_messages(session_factory: SessionFactory = get_task_session) -> int:
    cutoff = datetime.utcnow() - timedelta(seconds=settings.WORKER_CLAIM_TIMEOUT_SECONDS)
    async with session_factory() as db:
        released = await MessageQueueService(db).release_stale_claims(
            older_than=cutoff,
            max_retries=settings.WORKER_MAX_RETRIES,
        )
    if released:
        logger.warning(
            "Stale message claims released",
            extra_data={"released": released, "cutoff": cutoff.isoformat()},
        )
    return released


@celery_app.task(name="app.workers.tasks.drain_message_queue")
def drain_message_queue():
    """Send queued messages in batch mode (beat, every 10 seconds)."""
    return run_async(_drain_message_queue())


@celery_app.task(name="app.workers.tasks.release_stale_messages")
def release_stale_messages():
    """Return messages stuck in processing to the queue (or fail them)."""
    released = run_async(_release_stale_messages())
    return {"released": released}
