"""Job poll loop, graceful shutdown and the standalone worker entrypoint."""
import asyncio
import logging
import signal
import sys
from typing import Optional

from csv_worker.config import Settings, get_settings
from csv_worker.database import init_db
from csv_worker.errors import ValidationError
from csv_worker.logging_setup import configure_logging
from csv_worker.models.job import CSV_PROCESS
from csv_worker.schemas.job import JobRecord
from csv_worker.services.persistence import Persistence
from csv_worker.services.progress import ProgressPublisher
from csv_worker.services.repository import SqlJobRepository
from csv_worker.services.storage import SupabaseStorage
from csv_worker.tasks.process_job import JobProcessor, processing_stats, validate_job
from csv_worker.worker_state import WorkerContext

logger = logging.getLogger(__name__)


def config_summary(settings: Settings) -> dict:
    return {
        "poll_interval": settings.worker_poll_interval,
        "batch_size": settings.worker_batch_size,
        "max_concurrency": settings.worker_max_concurrency,
        "max_retries": settings.worker_max_retries,
        "heartbeat_interval": settings.worker_heartbeat_interval,
        "storage_bucket": settings.storage_bucket,
    }


class Worker:
    """
    Claims one job at a time and processes it to completion.

    The loop stops claiming as soon as shutdown is requested; a job already
    in progress is allowed to finish.
    """

    def __init__(
        self,
        persistence: Persistence,
        processor: JobProcessor,
        context: WorkerContext,
        settings: Optional[Settings] = None,
        job_type: str = CSV_PROCESS,
    ):
        self.persistence = persistence
        self.processor = processor
        self.context = context
        self.settings = settings or get_settings()
        self.job_type = job_type

    async def run(self) -> None:
        """Poll for jobs until shutdown is requested."""
        self.context.running = True
        logger.info("🔄 Starting worker loop...")

        while self.context.running and not self.context.shutting_down:
            self.context.mark_busy()
            try:
                job = await self.persistence.claim_next_job(self.job_type)
            except Exception as e:
                self.context.mark_idle()
                logger.error(f"❌ Worker loop error: {e}")
                await self._pause(self.settings.worker_poll_interval * 2)
                continue

            if job is None:
                self.context.mark_idle()
                await self._pause(self.settings.worker_poll_interval)
                continue

            if self.context.shutting_down:
                await self.release(job)
                break

            await self.handle(job)

        logger.info("🛑 Worker loop stopped")

    async def release(self, job: JobRecord) -> None:
        """Hand a job claimed during shutdown back to the queue unprocessed."""
        try:
            if job.id:
                await self.persistence.release_job(job.id)
                logger.info(f"↩️ Released job {job.id} claimed during shutdown")
        except Exception as e:
            logger.error(f"❌ Failed to release job {job.id}: {e}")
        finally:
            self.context.mark_idle()

    async def handle(self, job: JobRecord) -> None:
        """Validate and process one claimed job."""
        logger.info(f"📋 Picked up job {job.id} for upload {job.upload_id}")
        try:
            validate_job(job)
        except ValidationError as e:
            logger.warning(f"⚠️ Skipping malformed job {job.id}: {e}")
            self.context.mark_idle()
            await self._pause(self.settings.worker_malformed_job_backoff)
            return

        self.context.set_current_job(job)
        try:
            result = await self.processor.process(job)
            self.context.record_result(result.success)
            logger.info(f"✅ Job {job.id} finished: {processing_stats(result)}")
        except Exception as e:
            self.context.record_result(False)
            logger.error(f"❌ Job {job.id} failed: {e}", exc_info=True)
        finally:
            self.context.clear_current_job()

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop claiming jobs and wait for the current one, bounded by ``timeout``.

        A claim already in flight counts as work: shutdown waits for it to
        return and for the claimed job to be released.

        Returns:
            True if no job was left running when the wait ended
        """
        timeout = self.settings.worker_shutdown_timeout if timeout is None else timeout
        logger.info("🛑 Starting graceful shutdown...")
        self.context.request_shutdown()

        completed = True
        if not self.context.idle.is_set():
            logger.info(f"⏳ Waiting for {self._pending_work()} to complete...")
            try:
                await asyncio.wait_for(self.context.idle.wait(), timeout)
            except asyncio.TimeoutError:
                completed = False
                logger.warning(
                    f"⚠️ Shutdown timeout reached, {self._pending_work()} may be incomplete"
                )

        self.context.running = False
        logger.info("✅ Graceful shutdown completed")
        return completed

    def _pending_work(self) -> str:
        current = self.context.current_job
        return f"current job {current.id}" if current else "pending job claim"

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early if shutdown is requested."""
        try:
            await asyncio.wait_for(self.context.stop_requested.wait(), seconds)
        except asyncio.TimeoutError:
            pass


def build_worker(settings: Settings, storage: SupabaseStorage) -> Worker:
    persistence = Persistence(SqlJobRepository(), settings)
    processor = JobProcessor(
        persistence, storage, settings, publisher=ProgressPublisher(settings.redis_url)
    )
    context = WorkerContext(config=config_summary(settings))
    return Worker(persistence, processor, context, settings)


async def serve(settings: Settings) -> int:
    """Run the worker until SIGTERM/SIGINT; returns the process exit code."""
    logger.info("🚀 CSV Worker Service Starting...")
    logger.info(f"📋 Configuration: {config_summary(settings)}")

    init_db()
    storage = SupabaseStorage(settings)
    worker = build_worker(settings, storage)
    try:
        logger.info("🔌 Testing database connection...")
        await worker.persistence.check_connection()
        logger.info("🗄️ Testing storage connection...")
        if not await storage.check_connection():
            logger.error("❌ Worker startup failed: storage connection test failed")
            await storage.aclose()
            return 1
    except Exception as e:
        logger.error(f"❌ Worker startup failed: {e}")
        await storage.aclose()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    logger.info("✅ Worker initialized successfully")
    run_task = asyncio.create_task(worker.run())
    stop_task = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if stop.is_set():
            await worker.shutdown()
        if not run_task.done():
            # Shutdown timed out; exit regardless of the unfinished job
            run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)
    finally:
        stop_task.cancel()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await storage.aclose()
    return 0


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(serve(settings)))


if __name__ == "__main__":
    main()
