"""Tests for the periodic Celery housekeeping tasks."""
import pytest

from csv_worker.models.job import JobStatus
from csv_worker.schemas.job import JobStat
from csv_worker.tasks import housekeeping
from csv_worker.tasks.celery_app import celery_app


class StubRepository:
    deleted_with = None

    def delete_stale_jobs(self, older_than_days):
        StubRepository.deleted_with = older_than_days
        return 4

    def get_job_stats(self):
        return [JobStat(status=JobStatus.QUEUED, count=3), JobStat(status=JobStatus.FAILED, count=1)]

    def requeue_retrying_jobs(self):
        return 2


@pytest.fixture(autouse=True)
def stub_repository(monkeypatch):
    monkeypatch.setattr(housekeeping, "SqlJobRepository", StubRepository)


def test_beat_schedule_registered():
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {
        "csv_worker.cleanup_stale_jobs",
        "csv_worker.log_job_stats",
        "csv_worker.requeue_retrying_jobs",
    }


def test_cleanup_uses_configured_retention():
    assert housekeeping.cleanup_stale_jobs() == 4
    assert StubRepository.deleted_with == 7


def test_cleanup_with_explicit_retention():
    housekeeping.cleanup_stale_jobs(30)
    assert StubRepository.deleted_with == 30


def test_log_job_stats():
    assert housekeeping.log_job_stats() == {JobStatus.QUEUED: 3, JobStatus.FAILED: 1}


def test_requeue_retrying_jobs():
    assert housekeeping.requeue_retrying_jobs() == 2
