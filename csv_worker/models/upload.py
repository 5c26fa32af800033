"""Upload model for user-submitted CSV files."""
import uuid

from sqlalchemy import BigInteger, Column, DateTime, String, Text
from sqlalchemy.sql import func

from csv_worker.database import Base


class UploadStatus:
    """Upload lifecycle: pending -> uploading -> queued -> processing -> completed|failed."""

    PENDING = "pending"
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Upload(Base):
    """One source file submitted by a user, stored as chunk parts."""

    __tablename__ = "uploads"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    filename = Column(String(500), nullable=False)
    bytes_total = Column(BigInteger, default=0, nullable=False)
    bytes_uploaded = Column(BigInteger, default=0, nullable=False)
    bytes_processed = Column(BigInteger, default=0, nullable=False)
    status = Column(String(50), nullable=False, default=UploadStatus.PENDING, index=True)
    storage_path = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<Upload(id={self.id}, filename='{self.filename}', status='{self.status}')>"
