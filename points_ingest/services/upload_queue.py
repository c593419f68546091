"""Upload admission, status queries and cancellation."""
import logging
import uuid
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from points_ingest.clock import Clock, SystemClock
from points_ingest.exceptions import UploadValidationError
from points_ingest.models.upload_job import JobStatus
from points_ingest.schemas.upload import TransactionRow, UploadJobRecord, UploadProgress
from points_ingest.services.job_store import JobStore

logger = logging.getLogger(__name__)

RowInput = Union[TransactionRow, dict[str, Any]]


class UploadQueue:
    """
    Boundary operations exposed to callers submitting bulk uploads.

    Submission only validates and stores the job; rows are applied later by
    the worker loop.
    """

    def __init__(
        self,
        job_store: JobStore,
        clock: Optional[Clock] = None,
        allow_negative_amounts: bool = True,
        strict_row_validation: bool = False,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self._job_store = job_store
        self._clock = clock or SystemClock()
        self._allow_negative_amounts = allow_negative_amounts
        self._strict_row_validation = strict_row_validation
        self._id_factory = id_factory

    def submit(
        self,
        submitter_id: str,
        branch_id: str,
        source_label: str,
        rows: Iterable[RowInput],
    ) -> str:
        """
        Validate and enqueue a bulk upload.

        Args:
            submitter_id: Who submitted the upload
            branch_id: Branch whose customers the rows belong to
            source_label: Where the rows came from, e.g. a filename
            rows: Transaction rows, as ``TransactionRow`` or plain dicts

        Returns:
            The new job id; the job is pending and no row has been applied

        Raises:
            UploadValidationError: the submission is empty or malformed
            PersistenceError: the job could not be stored
        """
        if not submitter_id or not submitter_id.strip():
            raise UploadValidationError("Submitter id is required")
        if not branch_id or not branch_id.strip():
            raise UploadValidationError("Branch id is required")
        if not source_label or not source_label.strip():
            raise UploadValidationError("Source label is required")

        validated = self._validate_rows(rows)

        job = UploadJobRecord(
            id=self._id_factory(),
            submitter_id=submitter_id,
            branch_id=branch_id,
            source_label=source_label,
            status=JobStatus.PENDING,
            progress=UploadProgress(total=len(validated)),
            payload=validated,
            created_at=self._clock.now(),
        )
        self._job_store.insert(job)

        logger.info(f"✅ Queued upload job: {job.id} ({source_label}) with {len(validated)} transactions")
        return job.id

    def get_status(self, job_id: str) -> UploadJobRecord:
        """Latest persisted state of a job; raises ``JobNotFoundError``."""
        return self._job_store.get(job_id)

    def list_jobs(self, submitter_id: str) -> list[UploadJobRecord]:
        """Jobs submitted by ``submitter_id``, most recent first."""
        return self._job_store.list_by_submitter(submitter_id)

    def cancel(self, job_id: str) -> UploadJobRecord:
        """
        Cancel a job that no worker has claimed yet.

        Raises:
            JobNotFoundError: no job has this id
            JobConflictError: the job is no longer pending
        """
        job = self._job_store.cancel(job_id)
        logger.info(f"🛑 Cancelled upload job: {job_id}")
        return job

    def _validate_rows(self, rows: Iterable[RowInput]) -> list[TransactionRow]:
        if rows is None:
            raise UploadValidationError("At least one transaction row is required")

        validated = []
        for index, row in enumerate(rows):
            try:
                parsed = row if isinstance(row, TransactionRow) else TransactionRow.model_validate(row)
            except ValidationError as e:
                raise UploadValidationError(f"Row {index + 1} is malformed: {e}") from e

            if self._strict_row_validation and not parsed.mobile.strip():
                raise UploadValidationError(f"Row {index + 1} has no mobile number")
            if not self._allow_negative_amounts and parsed.amount < 0:
                raise UploadValidationError(f"Row {index + 1} has a negative amount")
            validated.append(parsed)

        if not validated:
            raise UploadValidationError("At least one transaction row is required")
        return validated
