# src/position_ledger/ledger/locks.py

import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Hashable, Iterable, Iterator


class KeyedLockRegistry:
    """
    Hands out one re-entrant lock per key.
    Writers for the same (user, asset) serialize; different keys never block each other.
    """
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self.lock_for(key):
            yield

    @contextmanager
    def hold_many(self, keys: Iterable[Hashable]) -> Iterator[None]:
        """
        Acquires the locks for all keys, always in sorted order.
        """
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock_for(key))
            yield
