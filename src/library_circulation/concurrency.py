"""
Concurrency control for circulation operations.

Two layers keep concurrent borrows and returns consistent:

1. ``LockRegistry`` serializes operations inside one process per user and per
   book. Locks are always taken in sorted key order, so two operations that
   need overlapping keys can never wait on each other in a cycle.
2. Row versions (``version_id_col``) and the database's own write lock catch
   anything the in-process locks cannot see, such as a second process. Those
   failures surface as ``ConcurrencyConflictError`` and ``retry_on_conflict``
   replays the whole operation in a fresh transaction.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from .errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def book_key(book_id: str) -> str:
    return f"book:{book_id}"


class LockRegistry:
    """Named in-process locks, created on first use."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *keys: str, timeout: float | None = None) -> Iterator[None]:
        """
        Hold every named lock for the duration of the block.

        Raises:
            ConcurrencyConflictError: If a lock cannot be taken within the
                timeout. Locks already taken are released first.
        """
        wait = self.timeout if timeout is None else timeout
        acquired: list[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=wait):
                    logger.warning("Timed out after %.1fs waiting for lock %s", wait, key)
                    raise ConcurrencyConflictError(f"Timed out waiting for {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def retry_on_conflict(
    func: Callable[[], T],
    attempts: int = 3,
    backoff: float = 0.05,
    operation: str = "operation",
) -> T:
    """
    Run ``func``, replaying it when it loses a concurrent update.

    ``func`` must be a complete unit of work (it opens and commits its own
    transaction), so a replay starts again from fresh reads. Waits
    ``backoff * 2**attempt`` seconds between attempts.

    Raises:
        ConcurrencyConflictError: If every attempt conflicted
    """
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrencyConflictError:
            if attempt >= attempts - 1:
                logger.warning("%s still conflicting after %d attempts", operation, attempts)
                raise
            wait_time = backoff * (2**attempt)
            logger.info(
                "%s hit a concurrent update, retrying in %.3fs (attempt %d/%d)",
                operation,
                wait_time,
                attempt + 1,
                attempts,
            )
            time.sleep(wait_time)

    raise ConcurrencyConflictError(f"{operation} was not attempted")
