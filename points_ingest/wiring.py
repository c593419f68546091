"""Builds the upload queue services from application settings."""
from typing import Callable, Optional

from sqlalchemy.orm import Session

from points_ingest.config import Settings, get_settings
from points_ingest.database import SessionLocal
from points_ingest.services.batch_ingestor import BatchIngestor
from points_ingest.services.job_processor import JobProcessor
from points_ingest.services.job_store import JobStore
from points_ingest.services.progress_publisher import ProgressPublisher
from points_ingest.services.upload_queue import UploadQueue
from points_ingest.services.upload_worker import UploadWorker

SessionFactory = Callable[[], Session]


def build_job_store(session_factory: SessionFactory = SessionLocal) -> JobStore:
    return JobStore(session_factory)


def build_upload_queue(
    session_factory: SessionFactory = SessionLocal,
    settings: Optional[Settings] = None,
) -> UploadQueue:
    """Admission and query service for callers submitting uploads."""
    settings = settings or get_settings()
    return UploadQueue(
        build_job_store(session_factory),
        allow_negative_amounts=settings.allow_negative_amounts,
        strict_row_validation=settings.strict_row_validation,
    )


def build_processor(
    session_factory: SessionFactory = SessionLocal,
    settings: Optional[Settings] = None,
) -> JobProcessor:
    """Chunked job processor wired to the ingestor and progress publisher."""
    settings = settings or get_settings()
    publisher = ProgressPublisher.from_url(settings.redis_url) if settings.publish_progress else None
    return JobProcessor(
        build_job_store(session_factory),
        BatchIngestor(session_factory, allow_negative_amounts=settings.allow_negative_amounts),
        chunk_size=settings.ingest_chunk_size,
        row_delay_seconds=settings.ingest_row_delay_seconds,
        failure_rate_threshold=settings.failure_rate_threshold,
        progress_write_attempts=settings.progress_write_attempts,
        progress_write_initial_backoff=settings.progress_write_initial_backoff_seconds,
        progress_write_max_backoff=settings.progress_write_max_backoff_seconds,
        publisher=publisher,
    )


def build_worker(
    dispatcher: Optional[Callable[[str], None]] = None,
    session_factory: SessionFactory = SessionLocal,
    settings: Optional[Settings] = None,
) -> UploadWorker:
    """
    Polling worker for pending uploads.

    Args:
        dispatcher: Where claimed job ids go; defaults to the worker's own
            thread pool
        session_factory: Database session factory
        settings: Settings override, mainly for tests

    Returns:
        An unstarted worker
    """
    settings = settings or get_settings()
    return UploadWorker(
        build_job_store(session_factory),
        build_processor(session_factory, settings),
        poll_interval_seconds=settings.worker_poll_interval_seconds,
        max_jobs_per_poll=settings.worker_max_jobs_per_poll,
        max_concurrent_jobs=settings.worker_max_concurrent_jobs,
        dispatcher=dispatcher,
    )
