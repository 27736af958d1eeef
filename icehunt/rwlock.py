"""
Readers-writer lock with bounded, backoff-based write acquisition.

Workers read the reporter state far more often than they change it, so many
readers may hold the lock together while writers get exclusive access and
are preferred over new readers. `write_with_backoff` never gives up: after a
bounded number of short, timed attempts it falls back to a blocking
acquisition, so an update is delayed under contention but never lost.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 10
BACKOFF_STEP = 0.01  # seconds; attempt n sleeps n * step before retrying


class RWLock:
    """Readers-writer lock with writer preference.

    Not reentrant. `read()` and `write()` accept an optional timeout and
    raise TimeoutError when the lock cannot be acquired in time.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._active_readers = 0
        self._active_writer: int | None = None
        self._waiting_writers = 0

    @contextmanager
    def read(self, timeout: float | None = None) -> Iterator[None]:
        self.acquire_read(timeout)
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self, timeout: float | None = None) -> Iterator[None]:
        self.acquire_write(timeout)
        try:
            yield
        finally:
            self.release_write()

    def acquire_read(self, timeout: float | None = None) -> None:
        _check_timeout(timeout)
        with self._condition:
            if self._active_writer == threading.get_ident():
                raise RuntimeError("Cannot acquire read lock while holding write lock")
            deadline = time.monotonic() + timeout if timeout is not None else None
            while self._active_writer is not None or self._waiting_writers > 0:
                self._wait(deadline, "read")
            self._active_readers += 1

    def release_read(self) -> None:
        with self._condition:
            if self._active_readers <= 0:
                raise RuntimeError("Read lock released more often than acquired")
            self._active_readers -= 1
            if self._active_readers == 0:
                self._condition.notify_all()

    def acquire_write(self, timeout: float | None = None) -> None:
        _check_timeout(timeout)
        current = threading.get_ident()
        with self._condition:
            if self._active_writer == current:
                raise RuntimeError("Write lock is not reentrant")
            deadline = time.monotonic() + timeout if timeout is not None else None
            self._waiting_writers += 1
            try:
                while self._active_readers > 0 or self._active_writer is not None:
                    self._wait(deadline, "write")
                self._active_writer = current
            finally:
                # Readers spin on the waiting-writer count; wake them on timeout too.
                self._waiting_writers -= 1
                self._condition.notify_all()

    def release_write(self) -> None:
        with self._condition:
            if self._active_writer != threading.get_ident():
                raise RuntimeError("Thread does not hold write lock")
            self._active_writer = None
            self._condition.notify_all()

    def _wait(self, deadline: float | None, purpose: str) -> None:
        if deadline is None:
            self._condition.wait()
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"Timed out waiting for {purpose} lock")
        self._condition.wait(timeout=remaining)

    @property
    def reader_count(self) -> int:
        with self._condition:
            return self._active_readers

    @property
    def writer_active(self) -> bool:
        with self._condition:
            return self._active_writer is not None


def _check_timeout(timeout: float | None) -> None:
    if timeout is not None and timeout < 0:
        raise ValueError(f"Timeout must be non-negative, got {timeout}")


@contextmanager
def write_with_backoff(
    lock: RWLock,
    attempts: int = WRITE_ATTEMPTS,
    step: float = BACKOFF_STEP,
    on_contention: Callable[[int], None] | None = None,
) -> Iterator[None]:
    """
    Hold the write lock of `lock`, retrying with linear backoff.

    Attempt ``n`` (counting from zero) first sleeps ``n * step`` seconds and
    then waits at most ``step`` seconds for the lock. The last attempt blocks
    until the lock is free.

    Args:
        lock: The lock to acquire.
        attempts: Total number of attempts, including the final blocking one.
        step: Backoff increment and per-attempt wait, in seconds.
        on_contention: Called with the number of failed attempts when the
            final blocking attempt is needed.
    """
    acquired = False
    for attempt in range(max(attempts, 1) - 1):
        if attempt:
            time.sleep(attempt * step)
        try:
            lock.acquire_write(timeout=step)
        except TimeoutError:
            continue
        acquired = True
        break

    if not acquired:
        failed = max(attempts, 1) - 1
        logger.debug("Write lock contended after %d attempts, blocking", failed)
        if on_contention is not None:
            on_contention(failed)
        if failed:
            time.sleep(failed * step)
        lock.acquire_write()

    try:
        yield
    finally:
        lock.release_write()
