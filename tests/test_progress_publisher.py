"""Tests for progress notifications and service wiring."""
import json

import redis

from points_ingest.config import Settings
from points_ingest.models.upload_job import JobStatus
from points_ingest.schemas.upload import UploadProgress
from points_ingest.services.progress_publisher import ProgressPublisher, progress_channel
from points_ingest.wiring import build_processor, build_worker


class FakeRedis:
    def __init__(self):
        self.published = []

    def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1


class DownRedis:
    def publish(self, channel, message):
        raise redis.ConnectionError("connection refused")


def test_publish_sends_counters():
    """Test that each update carries the job's counters on its own channel."""
    client = FakeRedis()
    publisher = ProgressPublisher(client)

    publisher.publish("job-1", JobStatus.PROCESSING, UploadProgress(total=4, processed=2, failed=1))

    assert client.published == [
        (
            "upload:job-1",
            {
                "job_id": "job-1",
                "status": "processing",
                "total": 4,
                "processed": 2,
                "failed": 1,
                "skipped": 0,
            },
        )
    ]


def test_publish_includes_error():
    client = FakeRedis()

    ProgressPublisher(client).publish("job-1", JobStatus.FAILED, UploadProgress(total=1, failed=1), "bad row")

    assert client.published[0][1]["error"] == "bad row"


def test_publish_survives_redis_outage():
    """Test that a broken Redis connection never fails processing."""
    ProgressPublisher(DownRedis()).publish("job-1", JobStatus.COMPLETED, UploadProgress(total=1, processed=1))


def test_progress_channel():
    assert progress_channel("abc") == "upload:abc"


def test_wiring_honours_settings(session_factory):
    """Test that services are built from settings without touching Redis."""
    settings = Settings(
        publish_progress=False,
        ingest_chunk_size=7,
        worker_max_jobs_per_poll=3,
    )

    processor = build_processor(session_factory, settings)
    worker = build_worker(session_factory=session_factory, settings=settings)

    assert processor._publisher is None
    assert processor._chunk_size == 7
    assert worker._max_jobs_per_poll == 3
    assert worker.tick() == []
