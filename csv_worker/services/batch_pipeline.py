"""Batch commit pipeline with a bounded number of in-flight commits."""
import asyncio
import logging
import math
import os
from typing import Awaitable, Callable, Optional

from csv_worker.schemas.connection import BatchResult, NormalizedRecord, PipelineTotals

logger = logging.getLogger(__name__)

CommitBatch = Callable[[list[NormalizedRecord]], Awaitable[BatchResult]]
ReportProgress = Callable[[int], Awaitable[None]]

PROGRESS_FLOOR = 10
PROGRESS_CEILING = 90
BYTES_PER_ROW_ESTIMATE = 200


def optimal_batch_size(file_size_bytes: int) -> int:
    """Larger files commit in larger batches."""
    mb = 1024 * 1024
    if file_size_bytes < 10 * mb:
        return 500
    if file_size_bytes < 100 * mb:
        return 1000
    if file_size_bytes < 1024 * mb:
        return 2000
    return 5000


def optimal_concurrency(file_size_bytes: int) -> int:
    base = min((os.cpu_count() or 1) * 2, 8)
    if file_size_bytes > 100 * 1024 * 1024:
        return min(int(base * 1.5), 12)
    return base


def estimate_batches(file_size_bytes: int, batch_size: int) -> int:
    """Rough batch count from file size, assuming ~200 bytes per row."""
    estimated_rows = math.ceil(file_size_bytes / BYTES_PER_ROW_ESTIMATE)
    return max(math.ceil(estimated_rows / batch_size), 1)


class BatchCommitPipeline:
    """
    Groups normalized rows into batches and commits them concurrently.

    At most ``max_concurrency`` commits run at once; handing off a new batch
    suspends until any in-flight commit finishes. A batch that fails (after
    the commit callable's own retries) is counted in ``totals.errors`` and
    the stream carries on. Batches are formed in source order but may
    complete in any order.

    Usage:
        pipeline = BatchCommitPipeline(persistence.commit_batch, 1000, 4)
        async for record in records:
            await pipeline.add(record)
        totals = await pipeline.finish()
    """

    def __init__(
        self,
        commit: CommitBatch,
        batch_size: int,
        max_concurrency: int,
        on_progress: Optional[ReportProgress] = None,
        progress_interval: int = 10,
        estimated_batches: Optional[int] = None,
    ):
        if batch_size < 1 or max_concurrency < 1:
            raise ValueError("batch_size and max_concurrency must be positive")

        self.commit = commit
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.on_progress = on_progress
        self.progress_interval = progress_interval
        self.estimated_batches = estimated_batches

        self.totals = PipelineTotals()
        self.peak_in_flight = 0
        self._batch: list[NormalizedRecord] = []
        self._in_flight: set[asyncio.Task] = set()
        self._progress_tasks: set[asyncio.Task] = set()
        self._progress_lock = asyncio.Lock()
        self._last_progress = 0
        self._completed = 0

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def add(self, record: NormalizedRecord) -> None:
        """Queue one row; hands off a batch once the target size is reached."""
        self._batch.append(record)
        self.totals.total += 1
        if len(self._batch) >= self.batch_size:
            await self._dispatch()

    async def finish(self) -> PipelineTotals:
        """Flush the partial batch and wait for every commit to settle."""
        if self._batch:
            await self._dispatch()

        if self._in_flight:
            logger.info(f"⏳ Waiting for {len(self._in_flight)} remaining batches to complete...")
            await asyncio.gather(*self._in_flight)
        if self._progress_tasks:
            await asyncio.gather(*self._progress_tasks)

        logger.info(
            f"📊 Commit results: {self.totals.processed} inserted, "
            f"{self.totals.duplicates} duplicates, {self.totals.errors} errors "
            f"across {self.totals.batches} batches"
        )
        return self.totals

    async def drain(self) -> None:
        """Let in-flight commits settle without flushing the partial batch."""
        pending = list(self._in_flight) + list(self._progress_tasks)
        if pending:
            logger.info(f"⏳ Draining {len(self._in_flight)} in-flight batches after stream error")
            await asyncio.gather(*pending, return_exceptions=True)

    async def _dispatch(self) -> None:
        batch, self._batch = self._batch, []
        await self._wait_for_slot()

        self.totals.batches += 1
        task = asyncio.create_task(self._commit_batch(batch, self.totals.batches))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))

    async def _wait_for_slot(self) -> None:
        while len(self._in_flight) >= self.max_concurrency:
            await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)

    async def _commit_batch(self, batch: list[NormalizedRecord], number: int) -> None:
        logger.info(f"📦 Processing batch {number}: {len(batch)} records")
        try:
            result = await self.commit(batch)
        except Exception as e:
            self.totals.errors += len(batch)
            self.totals.failed_batches += 1
            logger.error(f"❌ Batch {number} failed ({len(batch)} records): {e}")
        else:
            self.totals.processed += result.inserted_count
            self.totals.duplicates += result.duplicate_count
            logger.info(
                f"✅ Batch {number} complete: {result.inserted_count} inserted, "
                f"{result.duplicate_count} duplicates"
            )

        self._completed += 1
        if self.on_progress and self._completed % self.progress_interval == 0:
            task = asyncio.create_task(self._report_progress(self.progress_for(self._completed)))
            self._progress_tasks.add(task)
            task.add_done_callback(self._progress_tasks.discard)

    def progress_for(self, completed: int) -> int:
        """Map completed batches into the commit phase's 10-90% band."""
        estimated = max(self.estimated_batches or 0, completed, 1)
        span = PROGRESS_CEILING - PROGRESS_FLOOR
        progress = completed * span // estimated + PROGRESS_FLOOR
        return min(max(progress, PROGRESS_FLOOR), PROGRESS_CEILING)

    async def _report_progress(self, progress: int) -> None:
        async with self._progress_lock:
            if progress <= self._last_progress:
                return
            try:
                await self.on_progress(progress)
            except Exception as e:
                logger.warning(f"⚠️ Progress update failed: {e}")
                return
            self._last_progress = progress
