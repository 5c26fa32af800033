"""Connection record schemas."""
from typing import Optional

from pydantic import BaseModel, Field


class NormalizedRecord(BaseModel):
    """A validated CSV row in persistence shape, tagged with its identity hash."""

    name: str
    profile_url: str
    owner: str
    email: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    connected_on: Optional[str] = None
    url_hash: str = Field(..., min_length=64, max_length=64)


class BatchResult(BaseModel):
    """Counts returned by committing one batch."""

    inserted_count: int = Field(0, ge=0)
    duplicate_count: int = Field(0, ge=0)


class PipelineTotals(BaseModel):
    """Aggregated counts for one job's commit phase."""

    processed: int = 0
    duplicates: int = 0
    errors: int = 0
    total: int = 0
    invalid: int = 0
    batches: int = 0
    failed_batches: int = 0
