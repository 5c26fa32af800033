"""SQL implementation of the job/upload/connection persistence boundary."""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import func, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from csv_worker.database import get_session_factory
from csv_worker.errors import DatabaseError, ErrorKind
from csv_worker.models.connection import Connection
from csv_worker.models.job import CSV_PROCESS, Job, JobStatus
from csv_worker.models.upload import Upload, UploadStatus
from csv_worker.schemas.connection import BatchResult, NormalizedRecord
from csv_worker.schemas.job import FailureOutcome, JobRecord, JobStat
from csv_worker.schemas.upload import UploadRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlJobRepository:
    """
    Atomic job, upload and connection operations over SQLAlchemy.

    Every method opens its own session, so instances are safe to call
    from several worker threads at once.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise DatabaseError(f"Failed to {operation}: {e}") from e
        finally:
            db.close()

    def _insert(self, db: Session):
        dialect = db.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(Connection)
        return postgresql.insert(Connection)

    def check_connection(self) -> bool:
        with self._session("check database connection") as db:
            db.execute(text("SELECT 1"))
        return True

    def claim_next_job(self, job_type: str = CSV_PROCESS) -> Optional[JobRecord]:
        """
        Claim the oldest queued job of the given type and mark it running.

        Returns:
            The claimed job, or None when the queue is empty
        """
        with self._session("get next job") as db:
            job = (
                db.query(Job)
                .filter(Job.type == job_type, Job.status == JobStatus.QUEUED)
                .order_by(Job.created_at.asc(), Job.id.asc())
                .with_for_update(skip_locked=True)
                .first()
            )
            if not job:
                return None

            job.status = JobStatus.RUNNING
            job.last_heartbeat_at = _utcnow()
            db.commit()
            return JobRecord.model_validate(job)

    def update_job_progress(
        self,
        job_id: str,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        error: Optional[str] = None,
        heartbeat: bool = True,
        result: Optional[dict[str, Any]] = None,
    ) -> JobRecord:
        """
        Coalescing update of a job's status, progress, error and heartbeat.

        Progress never moves backwards while the job is running; entering
        ``retrying`` increments the attempt counter; ``succeeded`` clears
        any recorded error.
        """
        with self._session(f"update job progress for {job_id}") as db:
            job = db.query(Job).filter(Job.id == job_id).with_for_update().first()
            if not job:
                raise DatabaseError(f"Job {job_id} not found", kind=ErrorKind.TERMINAL, job_id=job_id)

            if status is not None:
                if status == JobStatus.RETRYING:
                    job.attempts += 1
                job.status = status

            if progress is not None:
                progress = min(max(progress, 0), 100)
                if job.status != JobStatus.RUNNING or progress >= job.progress:
                    job.progress = progress

            if status == JobStatus.SUCCEEDED:
                job.error = None
            elif error is not None:
                job.error = error

            if heartbeat:
                job.last_heartbeat_at = _utcnow()
            if result is not None:
                job.result = result

            db.commit()
            return JobRecord.model_validate(job)

    def update_upload_status(
        self,
        upload_id: str,
        status: Optional[str] = None,
        bytes_processed: Optional[int] = None,
        error: Optional[str] = None,
    ) -> UploadRecord:
        """Coalescing update of an upload; ``completed`` clears any error."""
        with self._session(f"update upload status for {upload_id}") as db:
            upload = db.query(Upload).filter(Upload.id == upload_id).with_for_update().first()
            if not upload:
                raise DatabaseError(
                    f"Upload {upload_id} not found", kind=ErrorKind.TERMINAL, upload_id=upload_id
                )

            if status is not None:
                upload.status = status
            if bytes_processed is not None:
                upload.bytes_processed = bytes_processed
            if status == UploadStatus.COMPLETED:
                upload.error = None
            elif error is not None:
                upload.error = error

            db.commit()
            return UploadRecord.model_validate(upload)

    def get_upload(self, upload_id: str) -> UploadRecord:
        with self._session(f"get upload {upload_id}") as db:
            upload = db.query(Upload).filter(Upload.id == upload_id).first()
            if not upload:
                raise DatabaseError(
                    f"Upload {upload_id} not found", kind=ErrorKind.TERMINAL, upload_id=upload_id
                )
            return UploadRecord.model_validate(upload)

    def commit_batch(self, records: list[NormalizedRecord]) -> BatchResult:
        """
        INSERT ... ON CONFLICT (url_hash, owner) DO NOTHING.

        Rows that hit the conflict, including repeats inside the batch,
        count as duplicates.

        Args:
            records: Normalized rows of one batch

        Returns:
            BatchResult with inserted and duplicate counts
        """
        if not records:
            return BatchResult()

        rows = [{"id": str(uuid.uuid4()), **record.model_dump()} for record in records]
        with self._session(f"insert connections batch of {len(rows)}") as db:
            stmt = self._insert(db).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["url_hash", "owner"])
            inserted = len(db.execute(stmt.returning(Connection.id)).fetchall())
            db.commit()

        return BatchResult(inserted_count=inserted, duplicate_count=len(rows) - inserted)

    def mark_job_failed(self, job_id: str, error: str, max_retries: int = 3) -> FailureOutcome:
        """
        Record a failure and decide whether the job will be retried.

        Below ``max_retries`` attempts the job moves to ``retrying`` and its
        attempt counter increments; otherwise it becomes terminally ``failed``.
        """
        with self._session(f"mark job {job_id} failed") as db:
            job = db.query(Job).filter(Job.id == job_id).with_for_update().first()
            if not job:
                raise DatabaseError(f"Job {job_id} not found", kind=ErrorKind.TERMINAL, job_id=job_id)

            if job.attempts < max_retries:
                job.status = JobStatus.RETRYING
                job.attempts += 1
            else:
                job.status = JobStatus.FAILED
            job.error = error
            job.last_heartbeat_at = _utcnow()
            db.commit()

            return FailureOutcome(
                status=job.status,
                attempts=job.attempts,
                will_retry=job.status == JobStatus.RETRYING,
            )

    def get_job_stats(self) -> list[JobStat]:
        with self._session("get job stats") as db:
            rows = db.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status).order_by(Job.status)
            ).all()
            return [JobStat(status=status, count=count) for status, count in rows]

    def delete_stale_jobs(self, older_than_days: int = 7) -> int:
        """Delete succeeded/failed jobs not touched for ``older_than_days``."""
        cutoff = _utcnow() - timedelta(days=older_than_days)
        with self._session("clean up old jobs") as db:
            deleted = (
                db.query(Job)
                .filter(Job.status.in_(JobStatus.FINISHED), Job.updated_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted

    def release_job(self, job_id: str) -> bool:
        """
        Put a claimed but unprocessed job back on the queue.

        Only a job still ``running`` is released; attempts are left as they are.
        """
        with self._session(f"release job {job_id}") as db:
            released = (
                db.query(Job)
                .filter(Job.id == job_id, Job.status == JobStatus.RUNNING)
                .update({Job.status: JobStatus.QUEUED, Job.progress: 0}, synchronize_session=False)
            )
            db.commit()
            return released > 0

    def requeue_retrying_jobs(self) -> int:
        """Put jobs waiting in ``retrying`` back on the queue."""
        with self._session("requeue retrying jobs") as db:
            requeued = (
                db.query(Job)
                .filter(Job.status == JobStatus.RETRYING)
                .update({Job.status: JobStatus.QUEUED, Job.progress: 0}, synchronize_session=False)
            )
            db.commit()
            return requeued
