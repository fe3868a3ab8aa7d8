"""
Per-key lock arena for balance mutations.

Each (employee_id, leave_type_code) key gets its own re-entrant lock, created on
first use and dropped once no thread holds or waits for it. Unrelated keys never
contend with each other. Row-level locking in the database (SELECT ... FOR UPDATE
plus the balance version check) covers callers in other processes.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List, Optional

from leave_admin.core.exceptions import ConcurrentModificationError


class KeyedLockRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of threads holding or waiting]
        self._entries: Dict[Hashable, List] = {}

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._entries[key] = entry
            entry[1] += 1

        lock = entry[0]
        acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
        try:
            if not acquired:
                raise ConcurrentModificationError(f"Timed out waiting for balance lock {key}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0 and self._entries.get(key) is entry:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Shared by every ledger instance in the process
balance_locks = KeyedLockRegistry()
