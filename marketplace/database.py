import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, declarative_base

from marketplace.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()

# Lock timeouts, serialization failures and deadlocks across backends
RETRYABLE_MARKERS = ("database is locked", "deadlock", "could not serialize access", "lock wait timeout")


def utcnow() -> datetime:
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def get_session():
    # Looked up at call time so tests can swap the factory
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_retryable(exc: Exception) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    msg = str(exc).lower()
    return any(marker in msg for marker in RETRYABLE_MARKERS)


def run_in_transaction(fn, *, session_factory=None, attempts: int = 3, backoff: float = 0.05):
    """Run ``fn(session)`` in one transaction, retrying transient storage failures.

    Only idempotent units of work belong here: a retried attempt starts
    from a fresh session with nothing of the failed attempt persisted.
    """
    factory = session_factory or get_session
    attempt = 0
    while True:
        attempt += 1
        try:
            with factory() as session:
                return fn(session)
        except OperationalError as exc:
            if attempt >= attempts or not is_retryable(exc):
                raise
            logger.warning("transaction.retry attempt=%s error=%s", attempt, exc)
            time.sleep(backoff * attempt)
