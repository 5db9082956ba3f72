# store.py
import logging
import threading
import time
from contextlib import contextmanager
from functools import wraps

from sqlalchemy.exc import OperationalError

from models import db

logger = logging.getLogger(__name__)

CONTENTION_MARKERS = (
    "database is locked",
    "deadlock",
    "lock wait timeout",
    "could not serialize",
    "could not obtain lock",
)

_state = threading.local()


@contextmanager
def transaction():
    """Commit on success, roll back on any error and re-raise."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def is_contention(exc):
    if not isinstance(exc, OperationalError):
        return False
    msg = str(getattr(exc, "orig", exc)).lower()
    return any(marker in msg for marker in CONTENTION_MARKERS)


def retry_on_contention(fn):
    """Retry a mutating method on transient store contention.

    Reads ``contention_retries`` and ``contention_backoff`` from the instance.
    Only the outermost decorated call retries; domain errors pass straight
    through.
    """
    @wraps(fn)
    def wrapped(self, *args, **kwargs):
        if getattr(_state, "active", False):
            return fn(self, *args, **kwargs)
        retries = getattr(self, "contention_retries", 3)
        backoff = getattr(self, "contention_backoff", 0.05)
        _state.active = True
        try:
            attempt = 0
            while True:
                try:
                    return fn(self, *args, **kwargs)
                except OperationalError as e:
                    db.session.rollback()
                    if not is_contention(e) or attempt >= retries:
                        raise
                    delay = backoff * (2 ** attempt)
                    attempt += 1
                    logger.warning("store contention in %s, retry %d/%d in %.3fs",
                                   fn.__name__, attempt, retries, delay)
                    time.sleep(delay)
        finally:
            _state.active = False
    return wrapped
