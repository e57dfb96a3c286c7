"""
按键加锁
同一用户的账务结算必须串行执行，不同用户之间互不影响
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLock:
    """为每个键维护一把可重入锁"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable):
        lock = self._lock_for(key)
        with lock:
            yield


# 账务锁，按用户ID
ledger_locks = KeyedLock()
