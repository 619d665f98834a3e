"""Per-key in-process locks.

Approval services serialise work on one parallel group (or one document)
while leaving every other key free.  Locks are reference counted and dropped
from the table once nobody holds or waits on them.

Usage:
    locks = KeyedLock()
    with locks("parallel-group:12"):
        ...
"""

import threading
from contextlib import contextmanager


class KeyedLock:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def __call__(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)
