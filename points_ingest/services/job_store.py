"""Durable storage for upload jobs with conditional state transitions."""
import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from points_ingest.clock import Clock, SystemClock
from points_ingest.exceptions import (
    DuplicateJobIdError,
    JobConflictError,
    JobNotFoundError,
    PersistenceError,
)
from points_ingest.models.upload_job import TERMINAL_STATUSES, JobStatus, UploadJob
from points_ingest.schemas.upload import UploadJobRecord, UploadProgress

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


class JobStore:
    """
    Job persistence operations.

    Every mutation is a single statement so a read-modify-write on one job
    never interleaves with another writer. Claim and cancel are conditional
    on the job still being pending; at most one of them can win.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ Job store failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert(self, job: UploadJobRecord) -> None:
        """
        Insert a new job record.

        Args:
            job: Fully populated job snapshot (normally pending)

        Raises:
            DuplicateJobIdError: a job with this id already exists
            PersistenceError: the write failed
        """
        row = UploadJob(
            id=job.id,
            submitter_id=job.submitter_id,
            branch_id=job.branch_id,
            source_label=job.source_label,
            status=job.status.value,
            total_rows=job.progress.total,
            processed_rows=job.progress.processed,
            failed_rows=job.progress.failed,
            skipped_rows=job.progress.skipped,
            payload=[r.model_dump(mode="json") for r in job.payload],
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
        try:
            with self._session("insert job") as session:
                session.add(row)
        except IntegrityError as e:
            raise DuplicateJobIdError(job.id) from e

    def get(self, job_id: str) -> UploadJobRecord:
        """
        Fetch one job.

        Raises:
            JobNotFoundError: no job has this id
        """
        with self._session("read job") as session:
            row = session.get(UploadJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            return UploadJobRecord.from_model(row)

    def list_by_submitter(self, submitter_id: str) -> list[UploadJobRecord]:
        """All jobs submitted by ``submitter_id``, most recent first."""
        with self._session("list jobs") as session:
            rows = session.execute(
                select(UploadJob)
                .where(UploadJob.submitter_id == submitter_id)
                .order_by(UploadJob.created_at.desc(), UploadJob.id.desc())
            ).scalars().all()
            return [UploadJobRecord.from_model(row) for row in rows]

    def list_pending(self, limit: int) -> list[UploadJobRecord]:
        """Up to ``limit`` pending jobs, oldest first."""
        with self._session("list pending jobs") as session:
            rows = session.execute(
                select(UploadJob)
                .where(UploadJob.status == JobStatus.PENDING.value)
                .order_by(UploadJob.created_at.asc(), UploadJob.id.asc())
                .limit(limit)
            ).scalars().all()
            return [UploadJobRecord.from_model(row) for row in rows]

    def claim(self, job_id: str) -> bool:
        """
        Atomically move a pending job to processing.

        Returns:
            True if this caller won the claim, False if the job was no
            longer pending (claimed elsewhere, cancelled or missing)
        """
        now = self._clock.now()
        with self._session("claim job") as session:
            result = session.execute(
                update(UploadJob)
                .where(
                    UploadJob.id == job_id,
                    UploadJob.status == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    started_at=func.coalesce(UploadJob.started_at, now),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def release(self, job_id: str) -> bool:
        """
        Hand a claimed job back to the pending queue.

        Only a processing job with no recorded progress can be released;
        once any row has been accounted for the job belongs to its processor.

        Returns:
            True if the job is pending again, False otherwise
        """
        with self._session("release job") as session:
            result = session.execute(
                update(UploadJob)
                .where(
                    UploadJob.id == job_id,
                    UploadJob.status == JobStatus.PROCESSING.value,
                    UploadJob.processed_rows == 0,
                    UploadJob.failed_rows == 0,
                    UploadJob.skipped_rows == 0,
                )
                .values(status=JobStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def cancel(self, job_id: str) -> UploadJobRecord:
        """
        Atomically move a pending job to cancelled.

        Raises:
            JobNotFoundError: no job has this id
            JobConflictError: the job is no longer pending
        """
        now = self._clock.now()
        with self._session("cancel job") as session:
            result = session.execute(
                update(UploadJob)
                .where(
                    UploadJob.id == job_id,
                    UploadJob.status == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    error_message=CANCELLED_MESSAGE,
                    completed_at=func.coalesce(UploadJob.completed_at, now),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_missed_update(session, job_id, "Can only cancel pending jobs")
            return UploadJobRecord.from_model(session.get(UploadJob, job_id))

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: UploadProgress,
        error_message: Optional[str] = None,
        expected_status: Optional[JobStatus] = None,
    ) -> None:
        """
        Write status, progress counters and error text in one statement.

        ``started_at`` is stamped the first time a job enters processing and
        ``completed_at`` the first time it enters a terminal state. The stored
        ``total`` and payload are never touched.

        Args:
            job_id: Job to update
            status: New status (never pending)
            progress: Counters to store; ``total`` must match the stored total
            error_message: Latest error text, replaces the previous one
            expected_status: Optimistic precondition on the current status;
                when omitted the job only has to be non-terminal

        Raises:
            JobNotFoundError: no job has this id
            JobConflictError: the precondition failed or the job is terminal
            PersistenceError: the write failed
        """
        if status is JobStatus.PENDING:
            raise JobConflictError(job_id, None, "Jobs cannot move back to pending")
        if status is JobStatus.CANCELLED:
            expected_status = JobStatus.PENDING

        now = self._clock.now()
        values = {
            "status": status.value,
            "processed_rows": progress.processed,
            "failed_rows": progress.failed,
            "skipped_rows": progress.skipped,
            "error_message": error_message,
        }
        if status is JobStatus.PROCESSING:
            values["started_at"] = func.coalesce(UploadJob.started_at, now)
        elif status.is_terminal:
            values["completed_at"] = func.coalesce(UploadJob.completed_at, now)

        conditions = [UploadJob.id == job_id, UploadJob.total_rows == progress.total]
        if expected_status is not None:
            conditions.append(UploadJob.status == expected_status.value)
        else:
            conditions.append(UploadJob.status.not_in([s.value for s in TERMINAL_STATUSES]))

        with self._session("update job status") as session:
            result = session.execute(
                update(UploadJob)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self._raise_for_missed_update(
                    session, job_id, f"Cannot move job to {status.value}"
                )

    def _raise_for_missed_update(self, session: Session, job_id: str, message: str) -> None:
        current = session.execute(
            select(UploadJob.status).where(UploadJob.id == job_id)
        ).first()
        if current is None:
            raise JobNotFoundError(job_id)
        raise JobConflictError(job_id, current.status, f"{message} (status: {current.status})")
