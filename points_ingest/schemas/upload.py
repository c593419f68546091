"""Upload job schemas shared by admission, storage and processing."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from points_ingest.models.upload_job import JobStatus, UploadJob


class TransactionRow(BaseModel):
    """One customer transaction as submitted in a bulk upload."""

    mobile: str = Field(..., max_length=32, description="Customer mobile number")
    amount: Decimal = Field(..., description="Point-affecting amount; negative for reversals")
    external_id: Optional[str] = Field(None, max_length=255, description="Source system transaction id")
    date: Optional[str] = Field(None, description="ISO-8601 transaction date, defaults to ingestion time")
    note: Optional[str] = None


class UploadProgress(BaseModel):
    """Row counters for a job; ``total`` is fixed at admission."""

    total: int = Field(0, ge=0)
    processed: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_within_total(self) -> "UploadProgress":
        if self.accounted > self.total:
            raise ValueError(
                f"progress accounts for {self.accounted} rows but total is {self.total}"
            )
        return self

    @property
    def accounted(self) -> int:
        return self.processed + self.failed + self.skipped

    def advanced(self, processed: int = 0, failed: int = 0, skipped: int = 0) -> "UploadProgress":
        """Return a copy with the given counts added."""
        return UploadProgress(
            total=self.total,
            processed=self.processed + processed,
            failed=self.failed + failed,
            skipped=self.skipped + skipped,
        )


class UploadJobRecord(BaseModel):
    """Snapshot of a persisted upload job."""

    model_config = ConfigDict(frozen=True)

    id: str
    submitter_id: str
    branch_id: str
    source_label: str
    status: JobStatus
    progress: UploadProgress
    payload: list[TransactionRow]
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, job: UploadJob) -> "UploadJobRecord":
        """
        Build a snapshot from an ORM row.

        Args:
            job: Loaded upload job row

        Returns:
            Detached, read-only view of the row
        """
        return cls(
            id=job.id,
            submitter_id=job.submitter_id,
            branch_id=job.branch_id,
            source_label=job.source_label,
            status=JobStatus(job.status),
            progress=UploadProgress(
                total=job.total_rows,
                processed=job.processed_rows,
                failed=job.failed_rows,
                skipped=job.skipped_rows,
            ),
            payload=[TransactionRow.model_validate(row) for row in job.payload],
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
