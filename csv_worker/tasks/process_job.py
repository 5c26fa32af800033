"""Processing of one claimed CSV ingestion job."""
import asyncio
import logging
import time
from typing import Optional

from csv_worker.config import Settings, get_settings
from csv_worker.errors import DatabaseError, ValidationError, job_retry_eligible
from csv_worker.models.job import CSV_PROCESS, JobStatus
from csv_worker.models.upload import UploadStatus
from csv_worker.schemas.job import JobRecord, JobResult
from csv_worker.schemas.upload import UploadRecord
from csv_worker.services.batch_pipeline import (
    BatchCommitPipeline,
    estimate_batches,
    optimal_batch_size,
    optimal_concurrency,
)
from csv_worker.services.chunk_reader import ChunkStreamReader, cleanup_upload_chunks
from csv_worker.services.csv_parser import CsvRowParser
from csv_worker.services.heartbeat import Heartbeat
from csv_worker.services.persistence import Persistence
from csv_worker.services.retry import RetryPolicy, Sleep
from csv_worker.services.validation import RecordValidator

logger = logging.getLogger(__name__)


def validate_job(job: JobRecord) -> None:
    """
    Check that a claimed job can be processed, before any side effect.

    Raises:
        ValidationError: missing identifiers, wrong type, or not running
    """
    if not job.id or not job.upload_id:
        raise ValidationError("Job missing required fields: id, upload_id", job_id=job.id)
    if job.type != CSV_PROCESS:
        raise ValidationError(f"Unsupported job type: {job.type}", job_id=job.id)
    if job.status != JobStatus.RUNNING:
        raise ValidationError(
            f"Job status should be '{JobStatus.RUNNING}', got: {job.status}", job_id=job.id
        )


def processing_stats(result: JobResult) -> str:
    """One-line summary of a job result for logs."""
    if not result.success:
        return f"Processing failed: {result.error}"

    committed = result.processed_records + result.duplicate_records
    success_rate = round(committed * 100 / result.total_records) if result.total_records else 0
    return (
        f"Processing completed: {result.processed_records} inserted, "
        f"{result.duplicate_records} duplicates, {result.total_records} total "
        f"({success_rate}% success rate)"
    )


class JobProcessor:
    """
    Runs one job end to end: stream chunks, parse, validate, commit, finalize.

    Progress goes 0 at start, 10 when streaming begins, through the commit
    pipeline's throttled updates (10-90), 90 once every batch settled and 100
    right before the job is marked succeeded.
    """

    def __init__(
        self,
        persistence: Persistence,
        storage,
        settings: Optional[Settings] = None,
        publisher=None,
        sleep: Optional[Sleep] = None,
    ):
        self.persistence = persistence
        self.storage = storage
        self.settings = settings or get_settings()
        self.publisher = publisher
        self._sleep = sleep
        self.storage_policy = RetryPolicy.from_settings(
            self.settings, self.settings.retry_update_attempts
        )

    async def process(self, job: JobRecord) -> JobResult:
        """
        Process a validated, running job. Never raises for job-level errors.

        Args:
            job: Claimed job that passed validate_job

        Returns:
            JobResult describing success or the recorded failure
        """
        started = time.monotonic()
        logger.info(f"🚀 Starting CSV processing for job {job.id} (upload {job.upload_id})")

        async with Heartbeat(
            lambda: self.persistence.heartbeat(job.id),
            self.settings.worker_heartbeat_interval,
            label=f"for job {job.id}",
        ):
            try:
                result = await self._run(job, started)
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.error(f"❌ CSV processing failed after {duration_ms}ms: {e}")
                return await self._fail(job, e, duration_ms)

        logger.info(f"🎉 CSV processing completed successfully in {result.duration_ms}ms")
        return result

    async def _run(self, job: JobRecord, started: float) -> JobResult:
        await self.persistence.update_job_progress(job.id, status=JobStatus.RUNNING, progress=0)

        upload = await self.persistence.get_upload(job.upload_id)
        logger.info(
            f"📄 Processing upload: {upload.filename} ({upload.bytes_total} bytes) "
            f"for user: {upload.user_id}"
        )
        await self.persistence.update_upload_status(upload.id, status=UploadStatus.PROCESSING)

        batch_size, concurrency = self._sizing(upload)
        reader = ChunkStreamReader(
            self.storage,
            upload.id,
            upload.filename,
            piece_size=self.settings.stream_piece_size,
            retry_policy=self.storage_policy,
            sleep=self._sleep,
        )
        parser = CsvRowParser()
        validator = RecordValidator(owner=upload.user_id)
        pipeline = BatchCommitPipeline(
            self.persistence.commit_batch,
            batch_size=batch_size,
            max_concurrency=concurrency,
            on_progress=lambda progress: self._report_progress(job.id, progress),
            progress_interval=self.settings.progress_update_interval,
            estimated_batches=estimate_batches(upload.bytes_total, batch_size),
        )
        logger.info(f"🔄 Streaming rows: batch_size={batch_size}, concurrency={concurrency}")

        await self._report_progress(job.id, 10)
        try:
            async for raw in parser.records(reader):
                record = validator.check(raw)
                if record is not None:
                    await pipeline.add(record)
        except Exception:
            await pipeline.drain()
            raise

        totals = await pipeline.finish()
        totals.invalid = validator.invalid
        logger.info(validator.summary())

        if totals.total == 0:
            raise ValidationError(
                "No valid rows found in CSV data", job_id=job.id, upload_id=upload.id
            )
        if totals.failed_batches == totals.batches:
            raise DatabaseError(
                f"All {totals.batches} batches failed to commit", job_id=job.id, upload_id=upload.id
            )

        await self._report_progress(job.id, 90)
        await self.persistence.update_job_progress(job.id, status=JobStatus.RUNNING, progress=100)

        result = JobResult(
            success=True,
            processed_records=totals.processed,
            duplicate_records=totals.duplicates,
            total_records=totals.total,
            invalid_records=totals.invalid,
            error_records=totals.errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        await self.persistence.update_upload_status(
            upload.id, status=UploadStatus.COMPLETED, bytes_processed=reader.bytes_read
        )
        await self.persistence.update_job_progress(
            job.id, status=JobStatus.SUCCEEDED, progress=100, result=result.result_payload()
        )
        await self._publish(job.id, JobStatus.SUCCEEDED, 100, result)

        logger.info("🧹 Cleaning up storage chunks...")
        await cleanup_upload_chunks(self.storage, upload.id)

        logger.info(
            f"📊 Final results: {totals.processed} inserted, {totals.duplicates} duplicates, "
            f"{totals.total} total valid rows, {totals.invalid} invalid, {totals.errors} errors"
        )
        return result

    async def _fail(self, job: JobRecord, error: Exception, duration_ms: int) -> JobResult:
        message = str(error)
        try:
            await self.persistence.update_upload_status(
                job.upload_id, status=UploadStatus.FAILED, error=message
            )
            outcome = await self.persistence.mark_job_failed(
                job.id, message, retryable=job_retry_eligible(error)
            )
            if outcome.will_retry:
                logger.info(f"🔄 Job will be retried (attempt {outcome.attempts})")
            else:
                logger.info(f"💀 Job failed permanently after {outcome.attempts} attempts")
        except Exception as update_error:
            logger.error(f"❌ Failed to update job/upload status after error: {update_error}")

        failed = JobResult(success=False, duration_ms=duration_ms, error=message)
        await self._publish(job.id, JobStatus.FAILED, 0, failed)
        return failed

    def _sizing(self, upload: UploadRecord) -> tuple[int, int]:
        if self.settings.adaptive_batching and upload.bytes_total:
            return optimal_batch_size(upload.bytes_total), optimal_concurrency(upload.bytes_total)
        return self.settings.worker_batch_size, self.settings.worker_max_concurrency

    async def _report_progress(self, job_id: str, progress: int) -> None:
        await self.persistence.update_job_progress(job_id, status=JobStatus.RUNNING, progress=progress)
        if self.publisher is not None:
            await asyncio.to_thread(self.publisher.publish, job_id, JobStatus.RUNNING, progress)

    async def _publish(self, job_id: str, status: str, progress: int, result: JobResult) -> None:
        if self.publisher is None:
            return
        await asyncio.to_thread(
            self.publisher.publish,
            job_id,
            status,
            progress,
            result.processed_records,
            result.duplicate_records,
            result.error,
        )
