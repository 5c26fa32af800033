"""Upload schemas."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class UploadRecord(BaseModel):
    """Upload as read from the persistence boundary."""

    id: str
    user_id: str
    filename: str
    bytes_total: int = 0
    bytes_uploaded: int = 0
    bytes_processed: int = 0
    status: str
    storage_path: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
