"""Background polling loop that claims pending upload jobs and runs them."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from points_ingest.exceptions import PersistenceError
from points_ingest.models.upload_job import JobStatus
from points_ingest.services.job_processor import JobProcessor
from points_ingest.services.job_store import JobStore

logger = logging.getLogger(__name__)


class UploadWorker:
    """
    Polls the job store for pending uploads and dispatches claimed jobs.

    Discovery lists up to ``max_jobs_per_poll`` pending jobs oldest first and
    claims each one with a conditional ``pending -> processing`` update before
    dispatching it, so overlapping polls (or several worker processes) never
    start the same job twice.

    By default claimed jobs run on an owned thread pool capped at
    ``max_concurrent_jobs``; a ``dispatcher`` callable can hand the job id to
    something else instead (e.g. a Celery task). ``tick()`` is public so tests
    can drive discovery without the background thread.
    """

    def __init__(
        self,
        job_store: JobStore,
        processor: JobProcessor,
        poll_interval_seconds: float = 2.0,
        max_jobs_per_poll: int = 10,
        max_concurrent_jobs: int = 10,
        dispatcher: Optional[Callable[[str], None]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._job_store = job_store
        self._processor = processor
        self._poll_interval = poll_interval_seconds
        self._max_jobs_per_poll = max_jobs_per_poll
        self._max_concurrent_jobs = max_concurrent_jobs
        self._dispatcher = dispatcher
        self._monotonic = monotonic
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> list[str]:
        """
        Run one discovery cycle.

        Returns:
            Ids of the jobs this cycle claimed and dispatched
        """
        limit = self._available_slots()
        if limit <= 0:
            logger.debug("All job slots busy, skipping poll")
            return []

        try:
            jobs = self._job_store.list_pending(limit)
        except PersistenceError:
            logger.error("❌ Error getting pending jobs, retrying next poll", exc_info=True)
            return []

        claimed = []
        for job in jobs:
            if self._stop_event.is_set():
                break
            try:
                won = self._job_store.claim(job.id)
            except PersistenceError:
                logger.error(f"❌ Error claiming job {job.id}", exc_info=True)
                continue
            if not won:
                logger.info(f"⏭️ Job {job.id} was claimed or cancelled elsewhere")
                continue

            logger.info(f"📥 Claimed job {job.id} ({job.source_label}, {job.progress.total} rows)")
            try:
                self._dispatch(job.id)
            except Exception:
                logger.exception(f"💥 Failed to dispatch claimed job {job.id}")
                self._release(job.id)
                continue
            claimed.append(job.id)
        return claimed

    def run_job(self, job_id: str) -> Optional[JobStatus]:
        """Process a claimed job to completion; never raises."""
        try:
            job = self._job_store.get(job_id)
            if job.status is not JobStatus.PROCESSING:
                logger.warning(f"⚠️ Job {job_id} is {job.status.value}, not processing; skipping")
                return None
            return self._processor.process(job)
        except Exception:
            logger.exception(f"💥 Processing task failed for job {job_id}")
            return None

    def start(self) -> None:
        """Start the polling loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="upload-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"🚀 Upload queue worker started (poll every {self._poll_interval}s)")

    def stop(self, timeout: float = 30.0, wait_for_jobs: bool = True) -> None:
        """
        Stop polling and optionally wait for in-flight jobs.

        In-flight jobs are never interrupted; they run to completion.

        Args:
            timeout: Max seconds to wait for the polling thread
            wait_for_jobs: Block until dispatched jobs have finished
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=wait_for_jobs)
            self._executor = None
        logger.info("🛑 Upload queue worker stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def in_flight(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._in_flight)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Poll on a fixed schedule until stopped; a failed tick never ends the loop."""
        next_poll = self._monotonic()
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("💥 Upload worker poll failed")

            next_poll += self._poll_interval
            delay = next_poll - self._monotonic()
            if delay < 0:
                # Fell behind; poll again now instead of bursting to catch up.
                next_poll = self._monotonic()
                delay = 0
            self._stop_event.wait(timeout=delay)

    def _available_slots(self) -> int:
        if self._dispatcher is not None:
            return self._max_jobs_per_poll
        with self._lock:
            free = self._max_concurrent_jobs - len(self._in_flight)
        return min(self._max_jobs_per_poll, free)

    def _dispatch(self, job_id: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher(job_id)
            return

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_concurrent_jobs,
                thread_name_prefix="upload-job",
            )
        with self._lock:
            self._in_flight.add(job_id)
        try:
            future = self._executor.submit(self.run_job, job_id)
        except Exception:
            self._finished(job_id)
            raise
        future.add_done_callback(lambda _: self._finished(job_id))

    def _release(self, job_id: str) -> None:
        try:
            released = self._job_store.release(job_id)
        except PersistenceError:
            logger.error(f"❌ Could not release job {job_id} back to pending", exc_info=True)
            return
        if released:
            logger.info(f"↩️ Released job {job_id} back to pending")
        else:
            logger.warning(f"⚠️ Job {job_id} could not be released; it has already started")

    def _finished(self, job_id: str) -> None:
        with self._lock:
            self._in_flight.discard(job_id)
