"""Drives the batch ingestor over a claimed job, chunk by chunk."""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from points_ingest.exceptions import JobConflictError, JobNotFoundError, PersistenceError
from points_ingest.models.upload_job import JobStatus
from points_ingest.schemas.upload import TransactionRow, UploadJobRecord, UploadProgress
from points_ingest.services.batch_ingestor import BatchIngestor, IngestOutcome
from points_ingest.services.job_store import JobStore
from points_ingest.services.progress_publisher import ProgressPublisher

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100


@dataclass
class ChunkCounts:
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    last_error: Optional[str] = None


def chunked_rows(rows: list[TransactionRow], chunk_size: int) -> Iterable[list[TransactionRow]]:
    for idx in range(0, len(rows), chunk_size):
        yield rows[idx : idx + chunk_size]


def decide_terminal_status(progress: UploadProgress, failure_rate_threshold: float) -> JobStatus:
    """
    Pick the terminal status for an exhausted job.

    A job fails when nothing was applied, or when the share of failed rows
    reaches ``failure_rate_threshold``. A threshold of 1.0 fails a job only
    when every row failed.
    """
    if progress.total == 0:
        return JobStatus.COMPLETED
    if progress.processed == 0:
        return JobStatus.FAILED
    if progress.failed / progress.total >= failure_rate_threshold:
        return JobStatus.FAILED
    return JobStatus.COMPLETED


class JobProcessor:
    """
    Processes one claimed job to a terminal state.

    Rows are applied in payload order; after each chunk the running progress
    is persisted. Row failures are counted, never raised. A progress write
    that keeps failing is retried with backoff and then abandoned for that
    chunk; a lost terminal write leaves the job in ``processing``.
    """

    def __init__(
        self,
        job_store: JobStore,
        ingestor: BatchIngestor,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        row_delay_seconds: float = 0.01,
        failure_rate_threshold: float = 0.5,
        progress_write_attempts: int = 5,
        progress_write_initial_backoff: float = 0.5,
        progress_write_max_backoff: float = 10.0,
        publisher: Optional[ProgressPublisher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._job_store = job_store
        self._ingestor = ingestor
        self._chunk_size = chunk_size
        self._row_delay = row_delay_seconds
        self._failure_rate_threshold = failure_rate_threshold
        self._publisher = publisher
        self._sleep = sleep
        self._retrying = Retrying(
            retry=retry_if_exception_type(PersistenceError),
            stop=stop_after_attempt(progress_write_attempts),
            wait=wait_exponential(
                multiplier=progress_write_initial_backoff,
                max=progress_write_max_backoff,
            )
            + wait_random(0, progress_write_initial_backoff),
            sleep=sleep,
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"⚠️ Progress write failed, retry {retry_state.attempt_number}/{progress_write_attempts}"
            ),
        )

    def process(self, job: UploadJobRecord) -> Optional[JobStatus]:
        """
        Apply every row of a claimed job and record the outcome.

        Args:
            job: Job already moved to processing by a claim

        Returns:
            The terminal status written, or None if the job was abandoned
            (terminal write lost, or the job changed state underneath us)
        """
        logger.info(f"🔄 Processing job: {job.id} ({job.source_label})")
        progress = UploadProgress(total=job.progress.total)
        last_error: Optional[str] = None

        for chunk_number, chunk in enumerate(chunked_rows(job.payload, self._chunk_size), start=1):
            counts = self._apply_chunk(job, chunk)
            progress = progress.advanced(
                processed=counts.applied, failed=counts.failed, skipped=counts.skipped
            )
            if counts.last_error:
                last_error = counts.last_error
                logger.warning(f"⚠️ Batch error for job {job.id}: {counts.last_error}")

            try:
                self._write(job.id, JobStatus.PROCESSING, progress, counts.last_error)
            except PersistenceError:
                logger.error(
                    f"💥 Giving up on progress write for job {job.id} chunk {chunk_number}",
                    exc_info=True,
                )
            except (JobConflictError, JobNotFoundError) as e:
                logger.error(f"🛑 Job {job.id} changed state while processing, abandoning: {e}")
                return None

            self._publish(job.id, JobStatus.PROCESSING, progress, counts.last_error)
            logger.info(
                f"📊 Job {job.id} progress: {progress.processed}/{progress.total} "
                f"(failed: {progress.failed}, skipped: {progress.skipped})"
            )

        final_status = decide_terminal_status(progress, self._failure_rate_threshold)
        error_message = None
        if progress.failed:
            error_message = f"{progress.failed} of {progress.total} rows failed"
            if last_error:
                error_message = f"{error_message}; last error: {last_error}"

        try:
            self._write(job.id, final_status, progress, error_message)
        except (PersistenceError, JobConflictError, JobNotFoundError):
            logger.error(f"💥 Could not record terminal state for job {job.id}", exc_info=True)
            return None

        self._publish(job.id, final_status, progress, error_message)
        logger.info(
            f"✅ Job finished: {job.id} - Status: {final_status.value} "
            f"(Processed: {progress.processed}, Failed: {progress.failed}, Skipped: {progress.skipped})"
        )
        return final_status

    def _apply_chunk(self, job: UploadJobRecord, chunk: list[TransactionRow]) -> ChunkCounts:
        counts = ChunkCounts()
        for row in chunk:
            result = self._ingestor.apply(job.branch_id, row, job_id=job.id)
            if result.outcome is IngestOutcome.APPLIED:
                counts.applied += 1
            elif result.outcome is IngestOutcome.SKIPPED:
                counts.skipped += 1
            else:
                counts.failed += 1
                counts.last_error = result.reason
                logger.warning(f"❌ Failed to process transaction for mobile {row.mobile}: {result.reason}")

            if self._row_delay:
                self._sleep(self._row_delay)
        return counts

    def _write(
        self,
        job_id: str,
        status: JobStatus,
        progress: UploadProgress,
        error_message: Optional[str],
    ) -> None:
        self._retrying.copy()(
            self._job_store.update_status,
            job_id,
            status,
            progress,
            error_message,
            expected_status=JobStatus.PROCESSING,
        )

    def _publish(
        self,
        job_id: str,
        status: JobStatus,
        progress: UploadProgress,
        error_message: Optional[str],
    ) -> None:
        if self._publisher is not None:
            self._publisher.publish(job_id, status, progress, error_message)
