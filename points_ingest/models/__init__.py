"""Database models."""
from points_ingest.models.customer import CustomerNumber, CustomerTransaction
from points_ingest.models.upload_job import TERMINAL_STATUSES, JobStatus, UploadJob

__all__ = ["CustomerNumber", "CustomerTransaction", "JobStatus", "TERMINAL_STATUSES", "UploadJob"]
