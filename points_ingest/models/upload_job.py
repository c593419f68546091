"""Upload job model for tracking bulk transaction ingestion."""
import enum

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from points_ingest.database import Base


class JobStatus(str, enum.Enum):
    """Lifecycle states of an upload job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class UploadJob(Base):
    """Model for tracking a queued bulk transaction upload."""

    __tablename__ = "upload_jobs"

    id = Column(String(36), primary_key=True)
    submitter_id = Column(String(255), nullable=False, index=True)
    branch_id = Column(String(255), nullable=False)
    source_label = Column(String(500), nullable=False)
    status = Column(String(50), nullable=False, default=JobStatus.PENDING.value)
    total_rows = Column(Integer, default=0, nullable=False)
    processed_rows = Column(Integer, default=0, nullable=False)
    failed_rows = Column(Integer, default=0, nullable=False)
    skipped_rows = Column(Integer, default=0, nullable=False)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_upload_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<UploadJob(id='{self.id}', status='{self.status}', source='{self.source_label}')>"
