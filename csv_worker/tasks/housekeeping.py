"""Celery tasks that keep the job table tidy."""
import logging
from typing import Optional

from csv_worker.config import get_settings
from csv_worker.services.repository import SqlJobRepository
from csv_worker.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="csv_worker.cleanup_stale_jobs")
def cleanup_stale_jobs(older_than_days: Optional[int] = None) -> int:
    """
    Delete finished jobs older than the retention window.

    Args:
        older_than_days: Retention in days, defaults to STALE_JOB_DAYS

    Returns:
        Number of deleted jobs
    """
    days = older_than_days or get_settings().stale_job_days
    logger.info(f"🧹 Performing periodic cleanup (jobs older than {days} days)...")
    deleted = SqlJobRepository().delete_stale_jobs(days)
    if deleted > 0:
        logger.info(f"🗑️ Cleaned up {deleted} old jobs")
    return deleted


@celery_app.task(name="csv_worker.log_job_stats")
def log_job_stats() -> dict:
    """Log and return job counts per status."""
    stats = {stat.status: stat.count for stat in SqlJobRepository().get_job_stats()}
    logger.info(f"📊 Job queue statistics: {stats}")
    return stats


@celery_app.task(name="csv_worker.requeue_retrying_jobs")
def requeue_retrying_jobs() -> int:
    """Move jobs marked ``retrying`` back to ``queued`` for the next claim."""
    requeued = SqlJobRepository().requeue_retrying_jobs()
    if requeued:
        logger.info(f"🔄 Requeued {requeued} retrying jobs")
    return requeued
