"""Per-resource exclusive locks.

A lock is a sibling ``.lock`` file next to the resource it protects, held
through :mod:`filelock`. Every ``FileLock`` opens its own descriptor, so two
holders exclude each other whether they live in different threads or in
different processes. The OS drops the lock when the holding process exits,
so a crashed invocation never leaves a session locked.
"""

from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from pathlib import Path
from types import TracebackType
from typing import Callable, Type, TypeVar

import filelock

from ..errors import LockTimeout

DEFAULT_LOCK_TIMEOUT = 5.0
LOCK_FILE_MODE = 0o600

T = TypeVar("T")

logger = logging.getLogger(__name__)


class FileLock(AbstractContextManager["FileLock"]):
    """Exclusive, timeout-bounded lock over a single lock file."""

    def __init__(
        self,
        path: Path | str,
        *,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = 0.05,
    ) -> None:
        self._path = Path(path).expanduser().resolve()
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._lock = filelock.FileLock(str(self._path), timeout=timeout, mode=LOCK_FILE_MODE)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> "FileLock":
        started = time.monotonic()
        try:
            self._lock.acquire(timeout=self._timeout, poll_interval=self._poll_interval)
        except filelock.Timeout:
            elapsed = time.monotonic() - started
            logger.warning(
                "Lock acquisition timed out",
                extra={"resource": str(self._path), "elapsed": elapsed},
            )
            raise LockTimeout(self._path, self._timeout, elapsed) from None
        return self

    def release(self) -> None:
        """Release the lock if held."""

        if self._lock.is_locked:
            self._lock.release()

    def __enter__(self) -> "FileLock":
        return self.acquire()

    def __exit__(
        self,
        exc_type: Type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def with_lock(
    path: Path | str,
    fn: Callable[[], T],
    *,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> T:
    """Run ``fn`` while holding the lock at ``path``; raise LockTimeout on contention."""

    with FileLock(path, timeout=timeout):
        return fn()


__all__ = ["DEFAULT_LOCK_TIMEOUT", "FileLock", "with_lock"]
