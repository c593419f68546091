"""Celery application configuration."""
from celery import Celery

from points_ingest.config import get_settings

settings = get_settings()

celery_app = Celery(
    "points_ingest",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["points_ingest.tasks.upload_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "poll-pending-uploads": {
            "task": "points_ingest.tasks.upload_tasks.poll_pending_uploads",
            "schedule": settings.worker_poll_interval_seconds,
        },
    },
)
