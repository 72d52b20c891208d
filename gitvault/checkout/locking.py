"""Shared/exclusive lock guarding a checkout's object store.

- Any number of readers may hold the lock together
- A writer excludes readers and other writers
- Waiting writers block new readers, so a refresh is not starved
- Release is not tied to the acquiring thread, so a lazily consumed stream
  can give its read lock back from whichever thread finishes it
- Waiters can be given an ``abort`` callable, polled while they wait, so a
  cancelled request stops waiting without needing a release to wake it
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

# How often an abortable waiter re-checks its abort callable
ABORT_POLL_INTERVAL = 0.05


class ReadWriteLock:
    """Writer-preferring readers/writer lock built on a condition variable."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def _wait(
        self,
        predicate: Callable[[], bool],
        timeout: float | None,
        abort: Callable[[], bool] | None,
    ) -> bool:
        # Called with the condition held
        if abort is None:
            return self._cond.wait_for(predicate, timeout=timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not predicate():
            if abort():
                return False
            interval = ABORT_POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                interval = min(interval, remaining)
            self._cond.wait(interval)
        return True

    def acquire_read(
        self, timeout: float | None = None, abort: Callable[[], bool] | None = None
    ) -> bool:
        """Acquire in shared mode.

        Returns False if the timeout elapsed or ``abort`` returned True first.
        """
        with self._cond:
            ok = self._wait(
                lambda: not self._writer and self._writers_waiting == 0,
                timeout,
                abort,
            )
            if not ok:
                return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read called without a matching acquire")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(
        self, timeout: float | None = None, abort: Callable[[], bool] | None = None
    ) -> bool:
        """Acquire in exclusive mode.

        Returns False if the timeout elapsed or ``abort`` returned True first.
        Either way the writer is no longer counted as waiting.
        """
        with self._cond:
            self._writers_waiting += 1
            try:
                ok = self._wait(
                    lambda: not self._writer and self._readers == 0,
                    timeout,
                    abort,
                )
            finally:
                self._writers_waiting -= 1
            if not ok:
                # Readers parked behind this writer may proceed again
                self._cond.notify_all()
                return False
            self._writer = True
            return True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write called without a matching acquire")
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()

    @property
    def stats(self) -> dict[str, int]:
        """Snapshot of the lock state."""
        with self._cond:
            return {
                "readers": self._readers,
                "writer": int(self._writer),
                "writers_waiting": self._writers_waiting,
            }
