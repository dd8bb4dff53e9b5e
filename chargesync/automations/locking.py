"""Per-user locks so only one writer touches a user's inverter schedule at a time."""

import threading
from contextlib import contextmanager
from typing import Dict, Optional

from chargesync.errors import CycleInProgress


class UserLocks:
    """Lazily created lock per user id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def get(self, user_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    def is_locked(self, user_id: int) -> bool:
        return self.get(user_id).locked()

    @contextmanager
    def hold(self, user_id: int, timeout: Optional[float] = None, what: str = 'Automation cycle'):
        """
        Hold the user's lock for the duration of the block.

        Args:
            timeout: None fails immediately when the lock is taken; otherwise wait up to this many seconds

        Raises:
            CycleInProgress: the lock could not be acquired
        """
        lock = self.get(user_id)
        acquired = lock.acquire(blocking=False) if timeout is None else lock.acquire(timeout=timeout)
        if not acquired:
            raise CycleInProgress(f"{what} already in progress for user {user_id}")
        try:
            yield
        finally:
            lock.release()
