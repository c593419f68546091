"""Pytest configuration and fixtures."""
import pytest
from sqlalchemy import func, select

from points_ingest.clock import DeterministicClock
from points_ingest.database import Base, create_db_engine, create_session_factory
from points_ingest.models import CustomerNumber, CustomerTransaction, UploadJob  # noqa: F401 - Import to register models
from points_ingest.services.batch_ingestor import BatchIngestor
from points_ingest.services.job_processor import JobProcessor
from points_ingest.services.job_store import JobStore
from points_ingest.services.upload_queue import UploadQueue
from points_ingest.services.upload_worker import UploadWorker


def no_sleep(seconds: float) -> None:
    return None


def count_rows(session_factory, model) -> int:
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def test_db(tmp_path):
    """Create a file-backed SQLite database so worker threads get their own connections."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db):
    return create_session_factory(test_db)


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def job_store(session_factory, clock):
    return JobStore(session_factory, clock)


@pytest.fixture
def upload_queue(job_store, clock):
    return UploadQueue(job_store, clock)


@pytest.fixture
def ingestor(session_factory, clock):
    return BatchIngestor(session_factory, clock)


def make_processor(job_store, ingestor, **overrides) -> JobProcessor:
    options = dict(
        chunk_size=2,
        row_delay_seconds=0,
        progress_write_attempts=3,
        progress_write_initial_backoff=0,
        progress_write_max_backoff=0,
        sleep=no_sleep,
    )
    options.update(overrides)
    return JobProcessor(job_store, ingestor, **options)


@pytest.fixture
def processor(job_store, ingestor):
    return make_processor(job_store, ingestor)


@pytest.fixture
def worker(job_store, processor):
    """Worker that runs claimed jobs inline on the polling thread."""
    inline_worker = UploadWorker(
        job_store,
        processor,
        poll_interval_seconds=0.01,
        dispatcher=lambda job_id: inline_worker.run_job(job_id),
    )
    return inline_worker
