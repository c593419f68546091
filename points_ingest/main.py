"""Upload queue worker entry point."""
import logging
import signal
import threading

from points_ingest.config import get_settings
from points_ingest.database import Base, engine
from points_ingest.models import CustomerNumber, CustomerTransaction, UploadJob  # noqa: F401 - Import to register models
from points_ingest.wiring import build_worker

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Console logging, plus a log file when one is configured."""
    settings = get_settings()
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    # Set specific log levels for noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)


def main() -> None:
    """Create tables, run the polling worker until SIGINT/SIGTERM."""
    configure_logging()
    Base.metadata.create_all(bind=engine)

    stop_requested = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_requested.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    worker = build_worker()
    worker.start()
    logger.info("✅ Upload queue worker started - transactions will process in background")
    while not stop_requested.wait(timeout=1.0):
        pass
    worker.stop()


if __name__ == "__main__":
    main()
