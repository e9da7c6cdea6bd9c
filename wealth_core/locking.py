"""
Per-account serialization.

Mutating operations hold the lock of every account they touch for the whole
read-modify-write. Multiple locks are always taken in sorted account-id
order so two transfers in opposite directions cannot deadlock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class AccountLockManager:
    """Hands out one re-entrant lock per account id"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, *account_ids: str) -> Iterator[None]:
        """Acquire the locks for the given accounts in lexicographic order"""
        ordered = sorted(set(account_ids))
        acquired = []
        try:
            for account_id in ordered:
                lock = self._lock_for(account_id)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
