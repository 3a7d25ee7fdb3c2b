"""
Per-entity exclusive locks.

Allocation and reversal read a loan's outstanding rows and write them back;
two payments for the same loan must never interleave that read-modify-write.
Locks are re-entrant so a workflow holding a loan lock can call the engine,
which takes the same lock again.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .exceptions import StorageError


class LockRegistry:
    """
    Re-entrant lock per key, created on first use.

    An entry lives only while some thread holds or waits for it, so the
    registry does not grow with every loan or client ever seen.
    """

    def __init__(self, name: str, timeout: Optional[float] = None):
        self.name = name
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str):
        """Hold the lock for ``key`` for the duration of the block"""
        lock = self._checkout(key)
        try:
            acquired = lock.acquire(timeout=self.timeout) if self.timeout else lock.acquire()
            if not acquired:
                raise StorageError(f"Timed out waiting for {self.name} lock on {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)


class LoanLockRegistry(LockRegistry):
    """Per-loan locks; always taken before any client wallet lock"""

    def __init__(self, timeout: Optional[float] = None):
        super().__init__("loan", timeout)


class ClientLockRegistry(LockRegistry):
    """Per-client wallet locks"""

    def __init__(self, timeout: Optional[float] = None):
        super().__init__("client", timeout)
