"""Tests for chunked job processing and terminal-state decisions."""
import warnings

import pytest

from conftest import make_processor, no_sleep
from points_ingest.exceptions import PersistenceError
from points_ingest.models.upload_job import JobStatus
from points_ingest.schemas.upload import UploadProgress
from points_ingest.services.batch_ingestor import IngestResult
from points_ingest.services.job_processor import JobProcessor, decide_terminal_status
from points_ingest.services.job_store import JobStore


class RecordingJobStore(JobStore):
    """Job store that remembers every status write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = []

    def update_status(self, job_id, status, progress, error_message=None, expected_status=None):
        self.writes.append((status, progress, error_message))
        super().update_status(job_id, status, progress, error_message, expected_status)


class FlakyJobStore(RecordingJobStore):
    """Job store whose status writes fail a set number of times."""

    def __init__(self, *args, failures=0, fail_processing_writes=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.fail_processing_writes = fail_processing_writes
        self.attempts = 0

    def update_status(self, job_id, status, progress, error_message=None, expected_status=None):
        self.attempts += 1
        if self.fail_processing_writes and status is JobStatus.PROCESSING:
            raise PersistenceError("database unavailable")
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("database unavailable")
        super().update_status(job_id, status, progress, error_message, expected_status)


class FakePublisher:
    def __init__(self):
        self.messages = []

    def publish(self, job_id, status, progress, error=None):
        self.messages.append((job_id, status, progress, error))


def submit_and_claim(upload_queue, job_store, rows):
    job_id = upload_queue.submit("user-1", "branch-1", "upload.csv", rows)
    assert job_store.claim(job_id)
    return job_store.get(job_id)


def good_rows(count):
    return [{"mobile": f"07700900{i:03d}", "amount": 10} for i in range(count)]


def test_progress_persisted_after_each_chunk(session_factory, clock, upload_queue, ingestor):
    """Test that progress is written once per chunk and grows monotonically."""
    store = RecordingJobStore(session_factory, clock)
    job = submit_and_claim(upload_queue, store, good_rows(5))

    status = make_processor(store, ingestor, chunk_size=2).process(job)

    assert status is JobStatus.COMPLETED
    assert [(s, p.processed) for s, p, _ in store.writes] == [
        (JobStatus.PROCESSING, 2),
        (JobStatus.PROCESSING, 4),
        (JobStatus.PROCESSING, 5),
        (JobStatus.COMPLETED, 5),
    ]
    final = store.get(job.id)
    assert final.progress == UploadProgress(total=5, processed=5)
    assert final.completed_at is not None
    assert final.error_message is None


def test_rows_applied_in_payload_order(job_store, upload_queue):
    """Test that rows reach the ingestor strictly in submission order."""

    class RecordingIngestor:
        def __init__(self):
            self.mobiles = []

        def apply(self, branch_id, row, job_id=None):
            self.mobiles.append(row.mobile)
            return IngestResult.applied()

    rows = good_rows(7)
    job = submit_and_claim(upload_queue, job_store, rows)
    ingestor = RecordingIngestor()

    make_processor(job_store, ingestor, chunk_size=3).process(job)

    assert ingestor.mobiles == [r["mobile"] for r in rows]


def test_row_failures_are_counted_not_raised(job_store, upload_queue, processor):
    """Test that bad rows are counted while the rest of the job proceeds."""
    rows = good_rows(3) + [{"mobile": "", "amount": 1}]
    job = submit_and_claim(upload_queue, job_store, rows)

    status = processor.process(job)

    final = job_store.get(job.id)
    assert status is JobStatus.COMPLETED
    assert final.progress == UploadProgress(total=4, processed=3, failed=1)
    assert "1 of 4 rows failed" in final.error_message
    assert "Missing mobile number" in final.error_message


def test_skipped_rows_counted_separately(job_store, upload_queue, processor):
    """Test that in-job duplicates land in the skipped counter."""
    rows = [
        {"mobile": "0771234567", "amount": 10, "external_id": "TX-1"},
        {"mobile": "0771234567", "amount": 10, "external_id": "TX-1"},
        {"mobile": "0779876543", "amount": 10, "external_id": "TX-2"},
    ]
    job = submit_and_claim(upload_queue, job_store, rows)

    processor.process(job)

    assert job_store.get(job.id).progress == UploadProgress(total=3, processed=2, skipped=1)


def test_failure_rate_threshold(job_store, upload_queue, ingestor):
    """Test that a job failing at or above the threshold ends failed."""
    rows = good_rows(2) + [{"mobile": "", "amount": 1}, {"mobile": " ", "amount": 1}]
    strict_job = submit_and_claim(upload_queue, job_store, rows)
    lenient_job = submit_and_claim(upload_queue, job_store, rows)

    strict = make_processor(job_store, ingestor, failure_rate_threshold=0.5)
    lenient = make_processor(job_store, ingestor, failure_rate_threshold=1.0)

    assert strict.process(strict_job) is JobStatus.FAILED
    assert lenient.process(lenient_job) is JobStatus.COMPLETED
    assert job_store.get(strict_job.id).progress.accounted == 4


def test_transient_progress_write_failures_are_retried(session_factory, clock, upload_queue, ingestor):
    """Test that a progress write succeeds after retrying transient errors."""
    store = FlakyJobStore(session_factory, clock, failures=2)
    job = submit_and_claim(upload_queue, store, good_rows(2))

    status = make_processor(store, ingestor, chunk_size=2, progress_write_attempts=3).process(job)

    assert status is JobStatus.COMPLETED
    assert store.attempts == 4
    assert store.get(job.id).progress.processed == 2


def test_progress_write_backoff_grows_with_jitter(session_factory, clock, upload_queue, ingestor):
    """Test that retries back off exponentially, capped, plus up to one initial step of jitter."""
    store = FlakyJobStore(session_factory, clock, failures=2)
    job = submit_and_claim(upload_queue, store, good_rows(1))
    pauses = []

    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        processor = make_processor(
            store,
            ingestor,
            progress_write_attempts=3,
            progress_write_initial_backoff=0.5,
            progress_write_max_backoff=1.0,
            sleep=pauses.append,
        )

    assert processor.process(job) is JobStatus.COMPLETED
    assert len(pauses) == 2
    assert 0.5 <= pauses[0] <= 1.0
    assert 1.0 <= pauses[1] <= 1.5


def test_abandoned_progress_writes_do_not_stop_the_job(session_factory, clock, upload_queue, ingestor):
    """Test that exhausting retries for a chunk moves on to the next one."""
    store = FlakyJobStore(session_factory, clock, fail_processing_writes=True)
    job = submit_and_claim(upload_queue, store, good_rows(4))

    status = make_processor(store, ingestor, chunk_size=2, progress_write_attempts=2).process(job)

    assert status is JobStatus.COMPLETED
    assert store.attempts == 2 * 2 + 1
    final = store.get(job.id)
    assert final.status is JobStatus.COMPLETED
    assert final.progress.processed == 4


def test_lost_terminal_write_leaves_job_processing(session_factory, clock, upload_queue, ingestor):
    """Test that a terminal write that never lands leaves the job in processing."""
    store = FlakyJobStore(session_factory, clock, failures=100)
    job = submit_and_claim(upload_queue, store, good_rows(1))

    status = make_processor(store, ingestor, progress_write_attempts=2).process(job)

    assert status is None
    assert store.get(job.id).status is JobStatus.PROCESSING


def test_unclaimed_job_is_abandoned(job_store, upload_queue, processor):
    """Test that processing refuses to write to a job nobody claimed."""
    job_id = upload_queue.submit("user-1", "branch-1", "upload.csv", good_rows(2))

    assert processor.process(job_store.get(job_id)) is None
    assert job_store.get(job_id).status is JobStatus.PENDING


def test_progress_published_per_chunk(job_store, upload_queue, ingestor):
    """Test that listeners receive each chunk and the terminal state."""
    publisher = FakePublisher()
    job = submit_and_claim(upload_queue, job_store, good_rows(3))

    make_processor(job_store, ingestor, chunk_size=2, publisher=publisher).process(job)

    assert [(m[1], m[2].processed) for m in publisher.messages] == [
        (JobStatus.PROCESSING, 2),
        (JobStatus.PROCESSING, 3),
        (JobStatus.COMPLETED, 3),
    ]


def test_row_delay_between_ingestions(job_store, upload_queue, ingestor):
    """Test that the processor pauses after every row."""
    pauses = []
    job = submit_and_claim(upload_queue, job_store, good_rows(3))

    make_processor(job_store, ingestor, row_delay_seconds=0.01, sleep=pauses.append).process(job)

    assert pauses == [0.01, 0.01, 0.01]


def test_chunk_size_must_be_positive(job_store, ingestor):
    with pytest.raises(ValueError):
        JobProcessor(job_store, ingestor, chunk_size=0, sleep=no_sleep)


@pytest.mark.parametrize(
    "progress, expected",
    [
        (UploadProgress(total=3, processed=3), JobStatus.COMPLETED),
        (UploadProgress(total=3, processed=2, failed=1), JobStatus.COMPLETED),
        (UploadProgress(total=4, processed=2, failed=2), JobStatus.FAILED),
        (UploadProgress(total=3, failed=3), JobStatus.FAILED),
        (UploadProgress(total=2, skipped=2), JobStatus.FAILED),
        (UploadProgress(total=0), JobStatus.COMPLETED),
    ],
)
def test_decide_terminal_status(progress, expected):
    assert decide_terminal_status(progress, failure_rate_threshold=0.5) is expected


def test_lenient_threshold_only_fails_when_nothing_applied():
    progress = UploadProgress(total=10, processed=1, failed=9)

    assert decide_terminal_status(progress, failure_rate_threshold=1.0) is JobStatus.COMPLETED
