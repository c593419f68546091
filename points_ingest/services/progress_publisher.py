"""Redis pub/sub progress notifications for upload jobs."""
import json
import logging
from typing import Optional

import redis

from points_ingest.models.upload_job import JobStatus
from points_ingest.schemas.upload import UploadProgress

logger = logging.getLogger(__name__)


def progress_channel(job_id: str) -> str:
    return f"upload:{job_id}"


class ProgressPublisher:
    """Publishes job progress so listeners can follow a job without polling."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "ProgressPublisher":
        return cls(redis.Redis.from_url(redis_url, decode_responses=True))

    def publish(
        self,
        job_id: str,
        status: JobStatus,
        progress: UploadProgress,
        error: Optional[str] = None,
    ) -> None:
        """
        Publish progress to Redis pub/sub.

        Args:
            job_id: Upload job ID
            status: Current status (processing, completed, failed)
            progress: Current row counters
            error: Latest error message, if any
        """
        message = {
            "job_id": job_id,
            "status": status.value,
            "total": progress.total,
            "processed": progress.processed,
            "failed": progress.failed,
            "skipped": progress.skipped,
        }
        if error:
            message["error"] = error
        try:
            self._client.publish(progress_channel(job_id), json.dumps(message))
        except redis.RedisError as e:
            logger.warning(f"⚠️ Failed to publish progress for job {job_id}: {e}")
