"""
Lock Registry Module

Named in-process locks serializing writers on one loan or one facility.
Keys are "loan:<id>" and "facility:<id>"; a lock is always taken before the
storage unit it protects.
"""

from contextlib import contextmanager
from typing import Dict
import threading

from .errors import ConflictError


class LockRegistry:
    """Mutual exclusion per key, with a bounded wait"""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def hold(self, key: str):
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout_seconds):
            raise ConflictError(f"{key} is being modified by another request; retry the operation")
        try:
            yield
        finally:
            lock.release()
