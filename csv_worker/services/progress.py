"""Best-effort progress fan-out over Redis pub/sub."""
import json
import logging
from typing import Optional

import redis

from csv_worker.config import get_settings

logger = logging.getLogger(__name__)


class ProgressPublisher:
    """Publishes job progress to ``job:<job_id>`` for live dashboards."""

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        self._redis_url = redis_url or get_settings().redis_url
        self._client = client

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def publish(
        self,
        job_id: str,
        status: str,
        progress: int,
        processed: int = 0,
        duplicates: int = 0,
        error: Optional[str] = None,
    ) -> None:
        """
        Publish a progress message. Never raises.

        Args:
            job_id: Job ID
            status: Current job status
            progress: Percentage 0-100
            processed: Rows inserted so far
            duplicates: Rows recognized as duplicates so far
            error: Error message (for failed status)
        """
        message = {
            "job_id": job_id,
            "status": status,
            "progress": progress,
            "processed": processed,
            "duplicates": duplicates,
        }
        if error:
            message["error"] = error
        try:
            self._get_client().publish(f"job:{job_id}", json.dumps(message))
        except redis.RedisError as e:
            # Don't fail the import if Redis is unavailable
            logger.warning(f"⚠️ Failed to publish progress for job {job_id}: {e}")
