"""Error taxonomy for the upload queue."""
from typing import Optional


class UploadQueueError(Exception):
    """Base class for upload queue errors."""


class UploadValidationError(UploadQueueError, ValueError):
    """Submission rejected before anything was persisted."""


class JobNotFoundError(UploadQueueError):
    """No upload job exists with the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Upload job {job_id} not found")


class JobConflictError(UploadQueueError):
    """A state-transition precondition did not hold."""

    def __init__(self, job_id: str, status: Optional[str], message: str):
        self.job_id = job_id
        self.status = status
        super().__init__(message)


class DuplicateJobIdError(JobConflictError):
    """A job with the same id has already been stored."""

    def __init__(self, job_id: str):
        super().__init__(job_id, None, f"Upload job {job_id} already exists")


class PersistenceError(UploadQueueError):
    """The job store could not be read or written."""


class IngestionError(UploadQueueError):
    """A single transaction row could not be applied."""
