from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ThreadLockRegistry:
    """One re-entrant lock per thread id; every state mutation of a thread holds it."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, thread_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(thread_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[thread_id] = lock
            return lock

    @contextmanager
    def hold(self, thread_id: str) -> Iterator[None]:
        lock = self.lock_for(thread_id)
        with lock:
            yield

    def discard(self, thread_id: str) -> None:
        with self._guard:
            self._locks.pop(thread_id, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
