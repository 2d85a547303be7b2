"""
Shared State Cells.

Each subsystem of a stabilization job lives in its own ``StateCell``: a
value guarded by a reader/writer lock and stamped with a version that is
bumped on every write. There is no transaction spanning several cells;
callers that need a consistent view of more than one cell take them
together through ``read_cells``/``write_cells``, which always acquire the
locks in the cells' creation order.

Render-time readers take one cell at a time on purpose, so a background
commit landing between two reads can be observed as a mixed
combination. That relaxed consistency is part of the contract.
"""

import itertools
import threading
from contextlib import contextmanager, ExitStack
from typing import Any, Generic, Iterator, TypeVar

T = TypeVar('T')

_cell_order = itertools.count()


class RWLock:
    """Reader/writer lock: many concurrent readers or one writer. Not reentrant."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class StateCell(Generic[T]):
    """
    Independently lockable, versioned holder of one subsystem's state.

    ``read()`` and ``write()`` yield the held object itself; mutate it only
    inside ``write()``. ``replace()`` swaps the object wholesale.
    """

    def __init__(self, value: T, name: str = ''):
        self.name = name
        self.order = next(_cell_order)
        self.version = 0
        self._value = value
        self._lock = RWLock()

    @contextmanager
    def read(self) -> Iterator[T]:
        with self._lock.read():
            yield self._value

    @contextmanager
    def write(self) -> Iterator[T]:
        with self._lock.write():
            try:
                yield self._value
            finally:
                self.version += 1

    def replace(self, value: T):
        with self._lock.write():
            self._value = value
            self.version += 1

    def __repr__(self):
        return f"StateCell({self.name or type(self._value).__name__}, v{self.version})"


class AtomicValue(Generic[T]):
    """A single value with atomic get/set."""

    def __init__(self, value: T):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T):
        with self._lock:
            self._value = value


@contextmanager
def _locked(cells, write: bool):
    ordered = sorted(range(len(cells)), key=lambda i: cells[i].order)
    values = [None] * len(cells)
    with ExitStack() as stack:
        for i in ordered:
            cell = cells[i]
            values[i] = stack.enter_context(cell.write() if write else cell.read())
        yield tuple(values)


def read_cells(*cells: StateCell) -> Any:
    """Read-lock several cells in global order; yields their values in argument order."""
    return _locked(cells, write=False)


def write_cells(*cells: StateCell) -> Any:
    """Write-lock several cells in global order; yields their values in argument order."""
    return _locked(cells, write=True)
