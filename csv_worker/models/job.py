"""Job model for queued CSV processing work."""
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import func

from csv_worker.database import Base

CSV_PROCESS = "csv_process"


class JobStatus:
    """Job lifecycle: queued -> running -> succeeded|failed|retrying."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"

    FINISHED = (SUCCEEDED, FAILED)


class Job(Base):
    """One unit of processing work bound 1:1 to an upload."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    upload_id = Column(
        String(36), ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = Column(String(50), nullable=False, default=CSV_PROCESS)
    status = Column(String(50), nullable=False, default=JobStatus.QUEUED)
    attempts = Column(Integer, default=0, nullable=False)
    last_heartbeat_at = Column(DateTime, nullable=True)
    progress = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_jobs_type_status", "type", "status"),
        Index("idx_jobs_status_created_at", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Job(id={self.id}, upload_id={self.upload_id}, status='{self.status}')>"
