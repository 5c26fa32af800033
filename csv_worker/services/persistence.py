"""Retry-wrapped async access to the persistence boundary."""
import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from csv_worker.config import Settings, get_settings
from csv_worker.models.job import CSV_PROCESS
from csv_worker.schemas.connection import BatchResult, NormalizedRecord
from csv_worker.schemas.job import FailureOutcome, JobRecord, JobStat
from csv_worker.schemas.upload import UploadRecord
from csv_worker.services.retry import RetryPolicy, Sleep, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Persistence:
    """
    Async facade over a synchronous repository.

    Each call runs in a worker thread and goes through the retry executor:
    job polling gets the fewest attempts, batch commits the most.
    """

    def __init__(
        self,
        repository,
        settings: Optional[Settings] = None,
        sleep: Optional[Sleep] = None,
    ):
        settings = settings or get_settings()
        self.repository = repository
        self.max_job_retries = settings.worker_max_retries
        self.poll_policy = RetryPolicy.from_settings(settings, settings.retry_poll_attempts)
        self.update_policy = RetryPolicy.from_settings(settings, settings.retry_update_attempts)
        self.commit_policy = RetryPolicy.from_settings(settings, settings.retry_commit_attempts)
        self._sleep = sleep

    async def _call(
        self, name: str, policy: RetryPolicy, fn: Callable[..., T], *args: Any, **kwargs: Any
    ) -> T:
        return await with_retry(
            lambda: asyncio.to_thread(fn, *args, **kwargs), name, policy, sleep=self._sleep
        )

    async def claim_next_job(self, job_type: str = CSV_PROCESS) -> Optional[JobRecord]:
        return await self._call(
            "Get next job", self.poll_policy, self.repository.claim_next_job, job_type
        )

    async def update_job_progress(
        self,
        job_id: str,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        error: Optional[str] = None,
        heartbeat: bool = True,
        result: Optional[dict[str, Any]] = None,
    ) -> JobRecord:
        return await self._call(
            f"Update job progress for {job_id}",
            self.update_policy,
            self.repository.update_job_progress,
            job_id,
            status=status,
            progress=progress,
            error=error,
            heartbeat=heartbeat,
            result=result,
        )

    async def heartbeat(self, job_id: str) -> JobRecord:
        """Refresh the liveness timestamp without touching status or progress."""
        return await self.update_job_progress(job_id, heartbeat=True)

    async def update_upload_status(
        self,
        upload_id: str,
        status: Optional[str] = None,
        bytes_processed: Optional[int] = None,
        error: Optional[str] = None,
    ) -> UploadRecord:
        return await self._call(
            f"Update upload status for {upload_id}",
            self.update_policy,
            self.repository.update_upload_status,
            upload_id,
            status=status,
            bytes_processed=bytes_processed,
            error=error,
        )

    async def get_upload(self, upload_id: str) -> UploadRecord:
        return await self._call(
            f"Get upload {upload_id}", self.update_policy, self.repository.get_upload, upload_id
        )

    async def commit_batch(self, records: list[NormalizedRecord]) -> BatchResult:
        return await self._call(
            f"Batch insert of {len(records)} connections",
            self.commit_policy,
            self.repository.commit_batch,
            records,
        )

    async def mark_job_failed(
        self, job_id: str, error: str, retryable: bool = True
    ) -> FailureOutcome:
        """Record a job failure; non-retryable failures skip ``retrying``."""
        return await self._call(
            f"Mark job {job_id} failed",
            self.update_policy,
            self.repository.mark_job_failed,
            job_id,
            error,
            self.max_job_retries if retryable else 0,
        )

    async def release_job(self, job_id: str) -> bool:
        return await self._call(
            f"Release job {job_id}", self.update_policy, self.repository.release_job, job_id
        )

    async def get_job_stats(self) -> list[JobStat]:
        return await self._call("Get job stats", self.poll_policy, self.repository.get_job_stats)

    async def delete_stale_jobs(self, older_than_days: int) -> int:
        return await self._call(
            "Clean up old jobs", self.poll_policy, self.repository.delete_stale_jobs, older_than_days
        )

    async def check_connection(self) -> bool:
        return await self._call(
            "Check database connection", self.poll_policy, self.repository.check_connection
        )
