from __future__ import annotations

from contextlib import contextmanager
from threading import Condition, Lock, get_ident
import time
from typing import Iterator

from app.core.exceptions import SchedulerError


class _SchoolScheduleLock:
    """Reader/writer lock for one school with exclusive per-class locks nested under the shared side.

    Whole-school work (regeneration, period changes) holds the writer side.
    Class work holds the reader side plus that class's lock, so edits of different
    classes run side by side but never alongside a regeneration. Once a writer is
    waiting, new class work queues behind it; threads already holding a class lock
    may still nest further ones.
    """

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._writer: int | None = None
        self._writer_depth = 0
        self._waiting_writers = 0
        self._readers: dict[int, int] = {}
        self._class_owners: dict[str, tuple[int, int]] = {}
        # Registry checkouts; guarded by the registry, not by _cond.
        self.users = 0

    def _wait(self, predicate, deadline: float | None) -> bool:
        while not predicate():
            if deadline is None:
                self._cond.wait()
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._cond.wait(remaining)
        return True

    def acquire_exclusive(self, timeout: float | None = None) -> bool:
        me = get_ident()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
                return True
            if me in self._readers:
                raise RuntimeError("Cannot take the school lock while holding a class lock of the same school")
            self._waiting_writers += 1
            try:
                acquired = self._wait(lambda: self._writer is None and not self._readers, deadline)
            finally:
                self._waiting_writers -= 1
                if self._waiting_writers == 0:
                    self._cond.notify_all()
            if not acquired:
                return False
            self._writer = me
            self._writer_depth = 1
            return True

    def release_exclusive(self) -> None:
        with self._cond:
            if self._writer != get_ident():
                raise RuntimeError("School lock released by a thread that does not hold it")
            self._writer_depth -= 1
            if self._writer_depth == 0:
                self._writer = None
                self._cond.notify_all()

    def acquire_class(self, class_id: str, timeout: float | None = None) -> bool:
        me = get_ident()
        deadline = None if timeout is None else time.monotonic() + timeout

        def available() -> bool:
            owner = self._class_owners.get(class_id)
            if owner is not None and owner[0] != me:
                return False
            if self._writer == me:
                return True
            return self._writer is None and (self._waiting_writers == 0 or me in self._readers)

        with self._cond:
            if not self._wait(available, deadline):
                return False
            if self._writer != me:
                self._readers[me] = self._readers.get(me, 0) + 1
            owner = self._class_owners.get(class_id)
            depth = owner[1] + 1 if owner is not None else 1
            self._class_owners[class_id] = (me, depth)
            return True

    def release_class(self, class_id: str) -> None:
        me = get_ident()
        with self._cond:
            owner = self._class_owners.get(class_id)
            if owner is None or owner[0] != me:
                raise RuntimeError("Class lock released by a thread that does not hold it")
            if owner[1] > 1:
                self._class_owners[class_id] = (me, owner[1] - 1)
            else:
                del self._class_owners[class_id]
            if self._writer != me:
                remaining = self._readers.get(me, 0) - 1
                if remaining > 0:
                    self._readers[me] = remaining
                else:
                    self._readers.pop(me, None)
            self._cond.notify_all()


class ScheduleLockRegistry:
    """Per-school locks, created on first use and dropped once no thread holds or waits on them."""

    def __init__(self) -> None:
        self._locks: dict[str, _SchoolScheduleLock] = {}
        self._guard = Lock()

    @contextmanager
    def _checkout(self, school_id: str) -> Iterator[_SchoolScheduleLock]:
        with self._guard:
            lock = self._locks.get(school_id)
            if lock is None:
                lock = _SchoolScheduleLock()
                self._locks[school_id] = lock
            lock.users += 1
        try:
            yield lock
        finally:
            with self._guard:
                lock.users -= 1
                if lock.users == 0 and self._locks.get(school_id) is lock:
                    del self._locks[school_id]

    @contextmanager
    def school_exclusive(self, school_id: str, timeout: float | None = None) -> Iterator[None]:
        with self._checkout(school_id) as lock:
            if not lock.acquire_exclusive(timeout):
                raise SchedulerError(
                    "Timetable is busy for this school. Try again shortly.",
                    details={"school_id": school_id},
                )
            try:
                yield
            finally:
                lock.release_exclusive()

    @contextmanager
    def class_exclusive(self, school_id: str, class_id: str, timeout: float | None = None) -> Iterator[None]:
        with self._checkout(school_id) as lock:
            if not lock.acquire_class(class_id, timeout):
                raise SchedulerError(
                    "Timetable is busy for this class. Try again shortly.",
                    details={"school_id": school_id, "class_id": class_id},
                )
            try:
                yield
            finally:
                lock.release_class(class_id)

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


_registry = ScheduleLockRegistry()


def get_schedule_locks() -> ScheduleLockRegistry:
    return _registry


def clear_schedule_locks() -> None:
    _registry.clear()
