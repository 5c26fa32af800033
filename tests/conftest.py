"""Pytest configuration and fixtures."""
from datetime import datetime, timezone
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from csv_worker import models  # noqa: F401 - Import to register models
from csv_worker.config import Settings
from csv_worker.database import Base
from csv_worker.errors import DatabaseError, ErrorKind, StorageError
from csv_worker.models.job import CSV_PROCESS, JobStatus
from csv_worker.models.upload import UploadStatus
from csv_worker.schemas.connection import BatchResult
from csv_worker.schemas.job import FailureOutcome, JobRecord, JobStat
from csv_worker.schemas.upload import UploadRecord
from csv_worker.services.storage import ChunkDescriptor


async def no_sleep(delay: float) -> None:
    return None


class SleepRecorder:
    """Awaitable sleep that records requested delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeStorage:
    """In-memory chunk storage keyed by upload ID."""

    def __init__(self):
        self.objects: dict[str, dict[str, bytes]] = {}
        self.fetched: list[str] = []
        self.deleted: list[str] = []
        self.fetch_failures: dict[str, int] = {}
        self.reachable = True

    def put(self, upload_id: str, name: str, data: bytes) -> None:
        self.objects.setdefault(upload_id, {})[name] = data

    def put_parts(self, upload_id: str, filename: str, parts: list[bytes]) -> None:
        for index, data in enumerate(parts):
            self.put(upload_id, f"{filename}.part{index}", data)

    async def list_parts(self, upload_id: str) -> list[ChunkDescriptor]:
        return [
            ChunkDescriptor(name=name, path=f"{upload_id}/{name}", size=len(data))
            for name, data in sorted(self.objects.get(upload_id, {}).items())
        ]

    async def fetch_part(self, path: str) -> bytes:
        remaining = self.fetch_failures.get(path, 0)
        if remaining:
            self.fetch_failures[path] = remaining - 1
            raise StorageError(f"Failed to download chunk {path}: connection reset")
        upload_id, name = path.split("/", 1)
        self.fetched.append(path)
        return self.objects[upload_id][name]

    async def delete_parts(self, paths: list[str]) -> None:
        for path in paths:
            upload_id, name = path.split("/", 1)
            self.objects.get(upload_id, {}).pop(name, None)
            self.deleted.append(path)

    async def check_connection(self) -> bool:
        return self.reachable

    async def aclose(self) -> None:
        return None


class FakeRepository:
    """Synchronous in-memory stand-in for SqlJobRepository."""

    def __init__(self):
        self.jobs: dict[str, JobRecord] = {}
        self.uploads: dict[str, UploadRecord] = {}
        self.connections: dict[tuple[str, str], dict] = {}
        self.progress_updates: list[tuple[Optional[str], Optional[int]]] = []
        self.committed_batches: list[int] = []
        self.commit_failures = 0
        self.commit_error_kind = ErrorKind.TRANSIENT

    def add_upload(self, upload_id: str, filename: str, bytes_total: int, user_id: str = "user-1"):
        self.uploads[upload_id] = UploadRecord(
            id=upload_id,
            user_id=user_id,
            filename=filename,
            bytes_total=bytes_total,
            bytes_uploaded=bytes_total,
            status=UploadStatus.QUEUED,
        )
        return self.uploads[upload_id]

    def add_job(self, job_id: str, upload_id: str, status: str = JobStatus.RUNNING, attempts: int = 0):
        self.jobs[job_id] = JobRecord(
            id=job_id,
            upload_id=upload_id,
            type=CSV_PROCESS,
            status=status,
            attempts=attempts,
            created_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )
        return self.jobs[job_id]

    def check_connection(self) -> bool:
        return True

    def claim_next_job(self, job_type: str = CSV_PROCESS) -> Optional[JobRecord]:
        for job in self.jobs.values():
            if job.type == job_type and job.status == JobStatus.QUEUED:
                job.status = JobStatus.RUNNING
                return job.model_copy()
        return None

    def update_job_progress(
        self, job_id, status=None, progress=None, error=None, heartbeat=True, result=None
    ) -> JobRecord:
        job = self.jobs[job_id]
        self.progress_updates.append((status, progress))
        if status is not None:
            if status == JobStatus.RETRYING:
                job.attempts += 1
            job.status = status
        if progress is not None and (job.status != JobStatus.RUNNING or progress >= job.progress):
            job.progress = progress
        if status == JobStatus.SUCCEEDED:
            job.error = None
        elif error is not None:
            job.error = error
        if heartbeat:
            job.last_heartbeat_at = datetime.now(timezone.utc).replace(tzinfo=None)
        if result is not None:
            job.result = result
        return job.model_copy()

    def update_upload_status(self, upload_id, status=None, bytes_processed=None, error=None):
        upload = self.uploads[upload_id]
        if status is not None:
            upload.status = status
        if bytes_processed is not None:
            upload.bytes_processed = bytes_processed
        if status == UploadStatus.COMPLETED:
            upload.error = None
        elif error is not None:
            upload.error = error
        return upload.model_copy()

    def get_upload(self, upload_id: str) -> UploadRecord:
        if upload_id not in self.uploads:
            raise DatabaseError(f"Upload {upload_id} not found", kind=ErrorKind.TERMINAL)
        return self.uploads[upload_id].model_copy()

    def commit_batch(self, records) -> BatchResult:
        if self.commit_failures:
            self.commit_failures -= 1
            raise DatabaseError("connection refused", kind=self.commit_error_kind)
        inserted = 0
        for record in records:
            key = (record.url_hash, record.owner)
            if key not in self.connections:
                self.connections[key] = record.model_dump()
                inserted += 1
        self.committed_batches.append(len(records))
        return BatchResult(inserted_count=inserted, duplicate_count=len(records) - inserted)

    def mark_job_failed(self, job_id: str, error: str, max_retries: int = 3) -> FailureOutcome:
        job = self.jobs[job_id]
        if job.attempts < max_retries:
            job.status = JobStatus.RETRYING
            job.attempts += 1
        else:
            job.status = JobStatus.FAILED
        job.error = error
        return FailureOutcome(
            status=job.status, attempts=job.attempts, will_retry=job.status == JobStatus.RETRYING
        )

    def release_job(self, job_id: str) -> bool:
        job = self.jobs[job_id]
        if job.status != JobStatus.RUNNING:
            return False
        job.status = JobStatus.QUEUED
        job.progress = 0
        return True

    def get_job_stats(self) -> list[JobStat]:
        counts: dict[str, int] = {}
        for job in self.jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
        return [JobStat(status=status, count=count) for status, count in sorted(counts.items())]

    def delete_stale_jobs(self, older_than_days: int = 7) -> int:
        return 0


@pytest.fixture
def settings():
    """Settings with fast polling and no real backoff."""
    return Settings(
        database_url="sqlite://",
        worker_poll_interval=0.01,
        worker_batch_size=1000,
        worker_max_concurrency=2,
        worker_heartbeat_interval=30.0,
        worker_shutdown_timeout=1.0,
        worker_malformed_job_backoff=0.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def byte_stream():
    """Factory for an async byte stream over the given pieces."""

    def make(*pieces: bytes):
        async def stream():
            for piece in pieces:
                yield piece

        return stream()

    return make


@pytest.fixture
def session_factory():
    """In-memory SQLite shared across threads for repository tests."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sleeps():
    """Recording sleep for asserting backoff delays."""
    return SleepRecorder()


@pytest.fixture
def instant_sleep():
    return no_sleep
