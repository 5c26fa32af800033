"""Job schemas."""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobRecord(BaseModel):
    """Job as returned by the persistence boundary.

    Identifying fields are optional so a malformed claim can still be
    represented and rejected before any side effect.
    """

    id: Optional[str] = None
    upload_id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    attempts: int = 0
    last_heartbeat_at: Optional[datetime] = None
    progress: int = 0
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class FailureOutcome(BaseModel):
    """Result of recording a job failure."""

    status: str
    attempts: int
    will_retry: bool


class JobResult(BaseModel):
    """Outcome of processing one job."""

    success: bool
    processed_records: int = 0
    duplicate_records: int = 0
    total_records: int = 0
    invalid_records: int = 0
    error_records: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    def result_payload(self) -> dict[str, Any]:
        """Counts stored in the job's result column."""
        return {
            "processed": self.processed_records,
            "duplicates": self.duplicate_records,
            "total": self.total_records,
            "invalid": self.invalid_records,
            "errors": self.error_records,
            "duration_ms": self.duration_ms,
        }


class JobStat(BaseModel):
    status: str
    count: int = Field(..., ge=0)
