"""Celery tasks for upload job discovery and processing."""
import logging
from typing import Optional

from points_ingest.exceptions import JobNotFoundError
from points_ingest.models.upload_job import JobStatus
from points_ingest.tasks.celery_app import celery_app
from points_ingest.wiring import build_job_store, build_processor, build_worker

logger = logging.getLogger(__name__)


@celery_app.task
def poll_pending_uploads() -> list[str]:
    """
    Claim pending uploads and queue one processing task per claimed job.

    Runs on the beat schedule. Claiming happens here, before the job is
    queued, so overlapping polls never enqueue the same job twice.

    Returns:
        Ids of the jobs claimed by this poll
    """
    worker = build_worker(dispatcher=lambda job_id: process_upload_job.delay(job_id))
    claimed = worker.tick()
    if claimed:
        logger.info(f"🚀 Queued {len(claimed)} upload jobs for processing")
    return claimed


@celery_app.task(bind=True)
def process_upload_job(self, job_id: str) -> Optional[dict]:
    """
    Process an already-claimed upload job in a Celery worker.

    Args:
        self: Celery task instance
        job_id: Upload job ID

    Returns:
        Dict with the final status and counts, or None if the job was not
        in processing state
    """
    logger.info(f"🚀 Starting upload processing task: job_id={job_id}")
    try:
        job = build_job_store().get(job_id)
    except JobNotFoundError:
        logger.error(f"❌ Job not found in database: {job_id}")
        return None

    if job.status is not JobStatus.PROCESSING:
        logger.warning(f"⚠️ Job {job_id} is {job.status.value}, expected processing; skipping")
        return None

    final_status = build_processor().process(job)
    if final_status is None:
        return None

    job = build_job_store().get(job_id)
    return {
        "status": final_status.value,
        "job_id": job_id,
        "total_rows": job.progress.total,
        "processed": job.progress.processed,
        "failed": job.progress.failed,
        "skipped": job.progress.skipped,
    }
