"""
In-process keyed locks for payroll writes.

Per-(run, employee) locks serialise every mutation + recompute of one detail;
per-run locks serialise aggregate refresh and the publish transition. The
database side is covered by SELECT ... FOR UPDATE and the run's version column.
"""
import threading
from contextlib import contextmanager, ExitStack
from typing import Dict, Hashable, Iterable, Tuple


class KeyedLocks:
    """One RLock per key; an entry lives only while someone holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders and waiters]
        self._locks: Dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @contextmanager
    def hold_many(self, keys: Iterable[Hashable]):
        # acquired in sorted key order
        with ExitStack() as stack:
            for k in sorted(set(keys)):
                stack.enter_context(self.hold(k))
            yield

    def __len__(self):
        with self._guard:
            return len(self._locks)


_employee_locks = KeyedLocks()
_run_locks = KeyedLocks()


def employee_lock(run_id: int, employee_id: int):
    return _employee_locks.hold((run_id, employee_id))


def employee_locks(pairs: Iterable[Tuple[int, int]]):
    return _employee_locks.hold_many(pairs)


def run_lock(run_id: int):
    return _run_locks.hold(run_id)
