"""Per-target exclusive locks."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from ..errors import LockTimeoutError


class TargetLocks:
    """One lock per environment name; acquisition fails fast after a timeout."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, target: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(target, threading.Lock())

    def locked(self, target: str) -> bool:
        return self._lock_for(target).locked()

    @contextmanager
    def hold(self, target: str, timeout: float = 5.0) -> Iterator[None]:
        lock = self._lock_for(target)
        if not lock.acquire(timeout=max(timeout, 0)):
            raise LockTimeoutError(
                f"Another deployment to {target} is in progress (lock not acquired in {timeout}s)"
            )
        try:
            yield
        finally:
            lock.release()
