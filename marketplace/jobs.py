"""Durable delayed-job queue stored alongside the orders.

Jobs are enqueued inside the caller's transaction, so a job exists iff
the work that scheduled it committed. Workers claim due jobs with a
compare-and-swap on ``status`` and retry failures with exponential
backoff.
"""
import logging
import threading
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from marketplace.config import settings
from marketplace.database import get_session, utcnow
from marketplace.models import ScheduledJob

logger = logging.getLogger(__name__)

ORDER_EXPIRATION_QUEUE = "order-expiration"


def order_job_id(code: str) -> str:
    return f"order:{code}"


class JobQueue:
    def __init__(
        self,
        name: str,
        session_factory=get_session,
        attempts: int = None,
        backoff_seconds: float = None,
    ):
        self.name = name
        self._session_factory = session_factory
        self.attempts = attempts or settings.job_attempts
        self.backoff_seconds = settings.job_backoff_seconds if backoff_seconds is None else backoff_seconds

    def add(self, session, job_id: str, payload: dict, delay: timedelta) -> ScheduledJob:
        """Insert or replace ``job_id`` within ``session``'s transaction."""
        job = session.merge(
            ScheduledJob(
                id=job_id,
                queue=self.name,
                payload=payload,
                status="queued",
                run_at=utcnow() + delay,
                attempts=0,
                max_attempts=self.attempts,
                locked_at=None,
                last_error=None,
            )
        )
        session.flush()
        return job

    def remove(self, job_id: str) -> bool:
        """Best-effort removal; never raises."""
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(ScheduledJob)
                    .where(ScheduledJob.id == job_id, ScheduledJob.queue == self.name)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0
        except SQLAlchemyError:
            logger.warning("job.remove_failed id=%s", job_id, exc_info=True)
            return False

    def get(self, job_id: str) -> Optional[ScheduledJob]:
        with self._session_factory() as session:
            return session.get(ScheduledJob, job_id)

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.backoff_seconds * (2 ** (attempt - 1)))


class Worker:
    """Polls one queue and dispatches each due job to ``handler(payload)``."""

    def __init__(
        self,
        queue: JobQueue,
        handler: Callable[[dict], None],
        session_factory=get_session,
        batch_size: int = 10,
        lease: timedelta = timedelta(minutes=5),
    ):
        self.queue = queue
        self.handler = handler
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.lease = lease

    def _due_ids(self, now):
        with self._session_factory() as session:
            stmt = (
                select(ScheduledJob.id)
                .where(
                    ScheduledJob.queue == self.queue.name,
                    or_(
                        and_(ScheduledJob.status == "queued", ScheduledJob.run_at <= now),
                        and_(ScheduledJob.status == "active", ScheduledJob.locked_at <= now - self.lease),
                    ),
                )
                .order_by(ScheduledJob.run_at)
                .limit(self.batch_size)
            )
            return list(session.execute(stmt).scalars())

    def _claim(self, job_id: str, now) -> Optional[ScheduledJob]:
        with self._session_factory() as session:
            claimed = session.execute(
                update(ScheduledJob)
                .where(
                    ScheduledJob.id == job_id,
                    or_(
                        and_(ScheduledJob.status == "queued", ScheduledJob.run_at <= now),
                        and_(ScheduledJob.status == "active", ScheduledJob.locked_at <= now - self.lease),
                    ),
                )
                .values(status="active", locked_at=now, attempts=ScheduledJob.attempts + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                return None
            return session.get(ScheduledJob, job_id)

    def _complete(self, job: ScheduledJob) -> None:
        with self._session_factory() as session:
            # A job re-added while this one ran is queued again and must survive
            session.execute(
                delete(ScheduledJob)
                .where(ScheduledJob.id == job.id, ScheduledJob.status == "active")
                .execution_options(synchronize_session=False)
            )

    def _fail(self, job: ScheduledJob, exc: Exception, now) -> None:
        with self._session_factory() as session:
            if job.attempts >= job.max_attempts:
                values = dict(status="failed", locked_at=None, last_error=repr(exc))
            else:
                values = dict(
                    status="queued",
                    locked_at=None,
                    last_error=repr(exc),
                    run_at=now + self.queue.backoff(job.attempts),
                )
            session.execute(
                update(ScheduledJob)
                .where(ScheduledJob.id == job.id, ScheduledJob.status == "active")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        if values["status"] == "failed":
            logger.error("job.failed id=%s attempts=%s error=%r", job.id, job.attempts, exc)
        else:
            logger.warning("job.retry id=%s attempt=%s error=%r", job.id, job.attempts, exc)

    def run_once(self, now=None) -> int:
        now = now or utcnow()
        processed = 0
        for job_id in self._due_ids(now):
            job = self._claim(job_id, now)
            if job is None:
                continue
            try:
                self.handler(dict(job.payload))
            except Exception as exc:
                self._fail(job, exc, now)
            else:
                self._complete(job)
                logger.info("job.completed id=%s", job.id)
            processed += 1
        return processed

    def run_forever(self, poll_seconds: float = None, stop: threading.Event = None, on_idle=None) -> None:
        poll_seconds = poll_seconds or settings.worker_poll_seconds
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                self.run_once()
                if on_idle is not None:
                    on_idle()
            except SQLAlchemyError:
                logger.exception("worker.poll_failed queue=%s", self.queue.name)
            stop.wait(poll_seconds)

