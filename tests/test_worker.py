"""Tests for the poll loop and graceful shutdown."""
import asyncio
import logging
import os
import signal

import pytest

from csv_worker import worker as worker_module
from csv_worker.errors import DatabaseError
from csv_worker.schemas.job import JobRecord, JobResult
from csv_worker.worker import Worker, config_summary, serve
from csv_worker.worker_state import WorkerContext


class StubPersistence:
    def __init__(self, jobs=(), fail_first=False, gate=None):
        self.jobs = list(jobs)
        self.fail_first = fail_first
        self.gate = gate
        self.claiming = asyncio.Event()
        self.claims = 0
        self.released = []

    async def claim_next_job(self, job_type):
        self.claims += 1
        self.claiming.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_first and self.claims == 1:
            raise DatabaseError("connection refused")
        return self.jobs.pop(0) if self.jobs else None

    async def release_job(self, job_id):
        self.released.append(job_id)
        return True

    async def check_connection(self):
        return True


class StubProcessor:
    def __init__(self, release=None, success=True):
        self.release = release
        self.success = success
        self.started = asyncio.Event()
        self.processed = []

    async def process(self, job):
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        self.processed.append(job.id)
        return JobResult(success=self.success)


def running_job(job_id="job-1"):
    return JobRecord(id=job_id, upload_id="upload-1", type="csv_process", status="running")


def make_worker(settings, persistence=None, processor=None):
    return Worker(
        persistence or StubPersistence(),
        processor or StubProcessor(),
        WorkerContext(config=config_summary(settings)),
        settings,
    )


@pytest.mark.asyncio
async def test_processes_claimed_jobs_in_turn(settings):
    processor = StubProcessor()
    worker = make_worker(settings, StubPersistence([running_job("a"), running_job("b")]), processor)
    run_task = asyncio.create_task(worker.run())

    while len(processor.processed) < 2:
        await asyncio.sleep(0.01)
    await worker.shutdown()
    await asyncio.wait_for(run_task, 1)

    assert processor.processed == ["a", "b"]
    assert worker.context.jobs_processed == 2
    assert worker.context.current_job is None


@pytest.mark.asyncio
async def test_failed_result_counted(settings):
    worker = make_worker(settings, processor=StubProcessor(success=False))

    await worker.handle(running_job())

    assert worker.context.jobs_failed == 1
    assert worker.context.jobs_processed == 0


@pytest.mark.asyncio
async def test_malformed_job_skipped(settings):
    processor = StubProcessor()
    worker = make_worker(settings, processor=processor)

    await worker.handle(JobRecord(id="job-1", upload_id=None, type="csv_process", status="running"))

    assert processor.processed == []
    assert worker.context.jobs_processed == 0
    assert worker.context.jobs_failed == 0


@pytest.mark.asyncio
async def test_claim_error_does_not_stop_loop(settings):
    processor = StubProcessor()
    persistence = StubPersistence([running_job()], fail_first=True)
    worker = make_worker(settings, persistence, processor)
    run_task = asyncio.create_task(worker.run())

    await asyncio.wait_for(processor.started.wait(), 1)
    await worker.shutdown()
    await asyncio.wait_for(run_task, 1)

    assert persistence.claims >= 2
    assert processor.processed == ["job-1"]


@pytest.mark.asyncio
async def test_shutdown_when_idle(settings):
    worker = make_worker(settings)
    run_task = asyncio.create_task(worker.run())
    await asyncio.sleep(0.02)

    assert await worker.shutdown() is True
    await asyncio.wait_for(run_task, 1)
    assert worker.context.running is False


@pytest.mark.asyncio
async def test_shutdown_waits_for_current_job(settings):
    release = asyncio.Event()
    processor = StubProcessor(release=release)
    worker = make_worker(settings, StubPersistence([running_job()]), processor)
    run_task = asyncio.create_task(worker.run())
    await asyncio.wait_for(processor.started.wait(), 1)

    shutdown = asyncio.create_task(worker.shutdown(timeout=1.0))
    await asyncio.sleep(0.02)
    assert not shutdown.done()
    assert worker.context.shutting_down

    release.set()
    assert await shutdown is True
    await asyncio.wait_for(run_task, 1)
    assert processor.processed == ["job-1"]


@pytest.mark.asyncio
async def test_shutdown_timeout_leaves_job_incomplete(settings, caplog):
    processor = StubProcessor(release=asyncio.Event())
    worker = make_worker(settings, StubPersistence([running_job()]), processor)
    run_task = asyncio.create_task(worker.run())
    await asyncio.wait_for(processor.started.wait(), 1)

    with caplog.at_level(logging.WARNING):
        completed = await worker.shutdown(timeout=0.05)

    assert completed is False
    assert "current job job-1 may be incomplete" in caplog.text
    assert worker.context.running is False

    run_task.cancel()
    await asyncio.gather(run_task, return_exceptions=True)


@pytest.mark.asyncio
async def test_shutdown_during_claim_releases_job(settings):
    gate = asyncio.Event()
    persistence = StubPersistence([running_job()], gate=gate)
    processor = StubProcessor()
    worker = make_worker(settings, persistence, processor)
    run_task = asyncio.create_task(worker.run())
    await asyncio.wait_for(persistence.claiming.wait(), 1)

    shutdown = asyncio.create_task(worker.shutdown(timeout=1.0))
    await asyncio.sleep(0.02)
    assert not shutdown.done()

    gate.set()
    assert await shutdown is True
    await asyncio.wait_for(run_task, 1)

    assert processor.processed == []
    assert persistence.released == ["job-1"]
    assert persistence.claims == 1


@pytest.mark.asyncio
async def test_shutdown_timeout_during_claim(settings, caplog):
    worker = make_worker(settings, StubPersistence([running_job()], gate=asyncio.Event()))
    run_task = asyncio.create_task(worker.run())
    await asyncio.wait_for(worker.persistence.claiming.wait(), 1)

    with caplog.at_level(logging.WARNING):
        assert await worker.shutdown(timeout=0.05) is False

    assert "pending job claim may be incomplete" in caplog.text
    run_task.cancel()
    await asyncio.gather(run_task, return_exceptions=True)


@pytest.fixture
def serve_worker(settings, storage, monkeypatch):
    release = asyncio.Event()
    worker = make_worker(
        settings, StubPersistence([running_job()]), StubProcessor(release=release)
    )
    monkeypatch.setattr(worker_module, "init_db", lambda: None)
    monkeypatch.setattr(worker_module, "SupabaseStorage", lambda settings: storage)
    monkeypatch.setattr(worker_module, "build_worker", lambda settings, storage: worker)
    return worker, release


@pytest.mark.asyncio
async def test_serve_finishes_job_on_sigterm(settings, serve_worker):
    worker, release = serve_worker
    serve_task = asyncio.create_task(serve(settings))
    await asyncio.wait_for(worker.processor.started.wait(), 1)

    os.kill(os.getpid(), signal.SIGTERM)
    await asyncio.sleep(0.02)
    assert worker.context.shutting_down
    assert not serve_task.done()

    release.set()
    assert await asyncio.wait_for(serve_task, 1) == 0
    assert worker.processor.processed == ["job-1"]
    assert worker.context.jobs_processed == 1
    assert worker.persistence.claims == 1


@pytest.mark.asyncio
async def test_serve_exits_when_storage_unreachable(settings, storage, serve_worker):
    storage.reachable = False

    assert await serve(settings) == 1
