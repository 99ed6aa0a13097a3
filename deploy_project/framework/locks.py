from __future__ import annotations

import contextlib
import threading
from typing import Iterator

from deploy_project.framework.errors import ConflictError


def workload_lock_key(cluster: str) -> str:
    return f"workload:{cluster}"


def topology_lock_key(cluster: str) -> str:
    return f"topology:{cluster}"


class KeyedLocks:
    """Named mutual-exclusion locks (one per cluster-scoped key)."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, str] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def holder(self, key: str) -> str | None:
        with self._guard:
            return self._holders.get(key)

    def acquire(self, key: str, holder: str, *, timeout: float | None = None) -> None:
        """Acquire `key` for `holder`.

        `timeout=0` never waits; `None` waits indefinitely. Raises ConflictError
        when the lock could not be taken in time.
        """

        lock = self._lock_for(key)
        if timeout is None:
            acquired = lock.acquire()
        elif timeout <= 0:
            acquired = lock.acquire(blocking=False)
        else:
            acquired = lock.acquire(timeout=timeout)
        if not acquired:
            raise ConflictError(key, self.holder(key))
        with self._guard:
            self._holders[key] = holder

    def release(self, key: str, holder: str) -> None:
        with self._guard:
            current = self._holders.get(key)
            if current != holder:
                raise RuntimeError(f"Lock {key} is held by {current!r}, not {holder!r}")
            del self._holders[key]
            lock = self._locks[key]
        lock.release()

    @contextlib.contextmanager
    def hold(self, key: str, holder: str, *, timeout: float | None = None) -> Iterator[None]:
        self.acquire(key, holder, timeout=timeout)
        try:
            yield
        finally:
            self.release(key, holder)
