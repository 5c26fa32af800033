"""Connection model for imported contact records."""
import uuid

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from csv_worker.database import Base


class Connection(Base):
    """A contact row, stored at most once per (url_hash, owner)."""

    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(500), nullable=False)
    profile_url = Column(Text, nullable=False)
    owner = Column(String(255), nullable=False, index=True)
    email = Column(String(320), nullable=True)
    company = Column(String(500), nullable=True)
    title = Column(String(500), nullable=True)
    connected_on = Column(String(100), nullable=True)
    url_hash = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("url_hash", "owner", name="uq_connections_url_hash_owner"),
    )

    def __repr__(self):
        return f"<Connection(id={self.id}, owner='{self.owner}', url='{self.profile_url}')>"
