"""Worker state owned by the poll loop and read by the health surface."""
import asyncio
import resource
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from csv_worker.schemas.job import JobRecord


@dataclass
class CurrentJob:
    id: str
    upload_id: Optional[str]
    started_at: datetime


@dataclass
class WorkerContext:
    """
    Mutable state of one worker process.

    Passed explicitly to the poll loop and the health app; there are no
    module-level globals.
    """

    config: dict[str, Any] = field(default_factory=dict)
    running: bool = False
    shutting_down: bool = False
    current_job: Optional[CurrentJob] = None
    jobs_processed: int = 0
    jobs_failed: int = 0
    started_at: float = field(default_factory=time.monotonic)
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self):
        self.idle.set()

    def mark_busy(self) -> None:
        """Hold off shutdown while a claim is in flight."""
        self.idle.clear()

    def mark_idle(self) -> None:
        self.idle.set()

    def set_current_job(self, job: JobRecord) -> None:
        self.current_job = CurrentJob(
            id=job.id or "",
            upload_id=job.upload_id,
            started_at=datetime.now(timezone.utc),
        )
        self.idle.clear()

    def clear_current_job(self) -> None:
        self.current_job = None
        self.idle.set()

    def record_result(self, success: bool) -> None:
        if success:
            self.jobs_processed += 1
        else:
            self.jobs_failed += 1

    def request_shutdown(self) -> None:
        self.shutting_down = True
        self.stop_requested.set()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def health_snapshot(self) -> dict[str, Any]:
        """Point-in-time view for health reporting."""
        current = None
        if self.current_job:
            current = {
                "id": self.current_job.id,
                "upload_id": self.current_job.upload_id,
                "started_at": self.current_job.started_at.isoformat(),
            }
        return {
            "status": "running" if self.running else "stopped",
            "is_shutting_down": self.shutting_down,
            "current_job": current,
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
            "uptime": round(self.uptime, 3),
            "memory": memory_usage(),
            "config": dict(self.config),
        }


def memory_usage() -> dict[str, int]:
    """Peak resident set size of this process in bytes."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is kilobytes on Linux, bytes on macOS
    scale = 1 if sys.platform == "darwin" else 1024
    return {"max_rss_bytes": usage.ru_maxrss * scale}
