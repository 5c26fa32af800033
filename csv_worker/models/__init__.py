"""Database models."""
from csv_worker.models.connection import Connection
from csv_worker.models.job import Job
from csv_worker.models.upload import Upload

__all__ = ["Connection", "Job", "Upload"]
