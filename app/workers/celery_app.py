"""
Celery app — מריץ את ה-worker במצב batch מתוך beat, ואת ה-sweeper של
הודעות שנתקעו ב-processing.
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "wa_delivery_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Settings מוודא ש-batch מלא של drain נכנס ב-soft limit
    task_soft_time_limit=settings.WORKER_DRAIN_TIME_LIMIT_SECONDS,
    task_time_limit=settings.WORKER_DRAIN_TIME_LIMIT_SECONDS + 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,
)


def _every(seconds: float) -> dict:
    # task שלא נאסף עד ה-tick הבא מיותר — ה-tick הבא יריץ חדש
    return {"schedule": seconds, "options": {"expires": seconds}}


celery_app.conf.beat_schedule = {
    "drain-message-queue": {
        "task": "app.workers.tasks.drain_message_queue",
        **_every(settings.QUEUE_DRAIN_INTERVAL_SECONDS),
    },
    "release-stale-messages": {
        "task": "app.workers.tasks.release_stale_messages",
        **_every(settings.STALE_SWEEP_INTERVAL_SECONDS),
    },
}
