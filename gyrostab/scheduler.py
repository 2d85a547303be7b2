"""
Job Scheduler Module.

Recompute jobs are submitted fire-and-forget to a scheduler. The default is
one process-wide thread pool sized to the machine; managers may be given
their own scheduler instead, e.g. ``InlineScheduler`` or
``DeferredScheduler`` for deterministic execution in tests.

Cancellation is cooperative: a job owns a ``CancellationToken`` and calls
``check()`` between stages. A newer submission makes older tokens stale,
and ``check()`` then raises ``Superseded``, which the job runner discards.
"""

import os
import threading
import traceback
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Deque, Optional

from .state import AtomicValue


class Superseded(Exception):
    """Raised at a checkpoint when a newer job replaced this one."""

    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id


class CancellationToken:
    """Ties a job id to the shared "current job" slot."""

    def __init__(self, current: AtomicValue, job_id: str):
        self._current = current
        self.job_id = job_id

    def is_superseded(self) -> bool:
        return self._current.get() != self.job_id

    def check(self):
        if self.is_superseded():
            raise Superseded(self.job_id)


def guarded(fn: Callable[[], None]) -> Callable[[], None]:
    """Wrap a job so a ``Superseded`` signal ends it quietly and real errors are printed."""
    def run():
        try:
            fn()
        except Superseded:
            pass
        except Exception:
            traceback.print_exc()
            raise
    return run


class ThreadPoolScheduler:
    """Thread pool executing jobs in the background."""

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers or os.cpu_count() or 1
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix='gyrostab'
        )

    def spawn(self, job: Callable[[], None]) -> Future:
        return self._executor.submit(guarded(job))

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


class InlineScheduler:
    """Runs every job immediately on the submitting thread."""

    def spawn(self, job: Callable[[], None]) -> Future:
        future = Future()
        try:
            guarded(job)()
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(None)
        return future

    def shutdown(self, wait: bool = True):
        pass


class DeferredScheduler:
    """Queues jobs until ``run_pending()`` is called."""

    def __init__(self):
        self._queue: Deque[Callable[[], None]] = deque()
        self._lock = threading.Lock()
        self._inline = InlineScheduler()

    def spawn(self, job: Callable[[], None]) -> Future:
        future = Future()
        with self._lock:
            self._queue.append(lambda: self._finish(job, future))
        return future

    def _finish(self, job, future):
        result = self._inline.spawn(job)
        if result.exception() is not None:
            future.set_exception(result.exception())
        else:
            future.set_result(None)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def run_pending(self) -> int:
        """Run queued jobs in submission order; returns how many ran."""
        ran = 0
        while True:
            with self._lock:
                if not self._queue:
                    return ran
                job = self._queue.popleft()
            job()
            ran += 1

    def shutdown(self, wait: bool = True):
        if wait:
            self.run_pending()


_default_scheduler: Optional[ThreadPoolScheduler] = None
_default_lock = threading.Lock()


def default_scheduler() -> ThreadPoolScheduler:
    """Process-wide pool shared by managers that were not given their own scheduler."""
    global _default_scheduler
    with _default_lock:
        if _default_scheduler is None:
            _default_scheduler = ThreadPoolScheduler()
        return _default_scheduler


def run_threaded(job: Callable[[], None]) -> Future:
    """Submit a job to the process-wide pool."""
    return default_scheduler().spawn(job)
