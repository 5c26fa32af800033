"""Error kinds and exceptions raised by the ingestion worker."""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """How an error propagates through the pipeline."""

    STRUCTURAL = "structural"  # file cannot be parsed at all
    ROW_LEVEL = "row_level"  # one row skipped, stream continues
    TRANSIENT = "transient"  # transport/timeouts, eligible for retry
    VALIDATION = "validation"  # malformed job input, never retried
    TERMINAL = "terminal"  # anything else that must not be retried


# Retry executor consults this table instead of inspecting exception types.
RETRYABLE_KINDS = frozenset({ErrorKind.TRANSIENT})


class WorkerError(Exception):
    """Base exception for worker errors."""

    kind: ErrorKind = ErrorKind.TERMINAL

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        job_id: Optional[str] = None,
        upload_id: Optional[str] = None,
    ):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.job_id = job_id
        self.upload_id = upload_id


class StructuralError(WorkerError):
    """Raised when the CSV stream has no usable structure (empty, no header)."""

    kind = ErrorKind.STRUCTURAL


class StorageError(WorkerError):
    """Raised when object storage cannot list or return chunk data."""

    kind = ErrorKind.TRANSIENT


class DatabaseError(WorkerError):
    """Raised when the persistence boundary rejects or fails an operation."""

    kind = ErrorKind.TRANSIENT


class ValidationError(WorkerError):
    """Raised for malformed job input; never retried."""

    kind = ErrorKind.VALIDATION


def classify_error(error: BaseException) -> ErrorKind:
    """Return the error kind; foreign exceptions count as transient."""
    if isinstance(error, WorkerError):
        return error.kind
    return ErrorKind.TRANSIENT


def is_retryable(error: BaseException) -> bool:
    return classify_error(error) in RETRYABLE_KINDS


# Job failures of these kinds go straight to ``failed`` regardless of attempts.
NON_RETRYABLE_JOB_KINDS = frozenset({ErrorKind.STRUCTURAL, ErrorKind.VALIDATION})


def job_retry_eligible(error: BaseException) -> bool:
    return classify_error(error) not in NON_RETRYABLE_JOB_KINDS
