import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

from .errors import StorageUnavailable


class UserLocks:
    """
    Per-user mutexes for callers inside one process. An entry lives only
    while someone holds or waits on it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[int, List] = {}  # user_id -> [lock, users]

    @contextmanager
    def hold(self, user_id: int, timeout: Optional[float] = None):
        with self._guard:
            entry = self._locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=-1 if timeout is None else timeout):
                raise StorageUnavailable("timed out waiting for balance lock", user_id=user_id, timeout=timeout)
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[user_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
