"""
Per-key mutual exclusion for a single process.

Claim admission and settlement hold `task:<task_id>` while they read and
mutate a task's claims, so concurrent requests on the same task are
serialized while different tasks proceed in parallel. A key's lock exists
only while some thread holds or waits on it.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .config import config
from .errors import OperationTimeout
from .logging import logger


class ThreadLockProvider:
    """Keyed locks backed by threading.Lock, created on first use."""

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = config.LOCK_TIMEOUT_SECONDS if default_timeout is None else default_timeout
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, List] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.default_timeout if timeout is None else timeout
        lock = self._checkout(key)
        if not lock.acquire(timeout=max(wait, 0)):
            self._checkin(key)
            logger.warning(f"Timed out after {wait}s waiting for lock {key}")
            raise OperationTimeout(f"Timed out waiting for lock {key}")
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)


def task_lock_key(task_id: str) -> str:
    return f"task:{task_id}"
