"""Celery application for periodic queue housekeeping."""
from celery import Celery

from csv_worker.config import get_settings

settings = get_settings()

celery_app = Celery(
    "csv_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["csv_worker.tasks.housekeeping"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "cleanup-stale-jobs": {
            "task": "csv_worker.cleanup_stale_jobs",
            "schedule": 3600.0,
        },
        "log-job-stats": {
            "task": "csv_worker.log_job_stats",
            "schedule": 3600.0,
        },
        "requeue-retrying-jobs": {
            "task": "csv_worker.requeue_retrying_jobs",
            "schedule": 300.0,
        },
    },
)
