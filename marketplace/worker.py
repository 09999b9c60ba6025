"""Background worker: expires unpaid order groups and purges old expired rows.

Run with ``python -m marketplace.worker`` (or ``marketplace-worker``).
"""
import logging
import signal
import threading
import time
from datetime import timedelta

from marketplace.config import settings
from marketplace.database import Base, engine
from marketplace.expiry import ExpiryService
from marketplace.jobs import JobQueue, ORDER_EXPIRATION_QUEUE, Worker

logger = logging.getLogger(__name__)

PURGE_INTERVAL = timedelta(hours=1)


def build_worker(session_factory=None, expiry: ExpiryService = None) -> Worker:
    kwargs = {"session_factory": session_factory} if session_factory else {}
    expiry = expiry or ExpiryService(**kwargs)
    queue = JobQueue(ORDER_EXPIRATION_QUEUE, **kwargs)
    return Worker(queue, expiry.handle, **kwargs)


class PeriodicPurge:
    def __init__(self, expiry: ExpiryService, interval: timedelta = PURGE_INTERVAL):
        self.expiry = expiry
        self.interval = interval.total_seconds()
        self._last = 0.0

    def __call__(self) -> None:
        now = time.monotonic()
        if now - self._last < self.interval:
            return
        self._last = now
        self.expiry.purge_expired()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    Base.metadata.create_all(bind=engine)

    expiry = ExpiryService()
    worker = build_worker(expiry=expiry)
    stop = threading.Event()

    def shutdown(signum, frame):
        logger.info("worker.stopping signal=%s", signum)
        stop.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    logger.info("worker.started queue=%s poll=%ss", ORDER_EXPIRATION_QUEUE, settings.worker_poll_seconds)
    worker.run_forever(stop=stop, on_idle=PeriodicPurge(expiry))


if __name__ == "__main__":
    main()
