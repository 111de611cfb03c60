"""Pools for fanning a single operation out across threads.

These are not general purpose thread pools meant for reuse. A pool is
created for one operation, fed with ``post``, and finished with ``join``.

Tasks should not raise. If one does, the pool is poisoned: the first
exception is kept, queued work is skipped, and every later ``post`` or
``join`` re-raises that same exception.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

Task = Callable[[], None]

_STOP = object()


class Pool:
    """Interface for fan-out pools."""

    def post(self, task: Task) -> None:
        """Add work to the pool, blocking if no worker is free."""
        raise NotImplementedError

    def join(self) -> None:
        """Wait for all work to finish, re-raising the first task error."""
        raise NotImplementedError

    @property
    def exception(self) -> Optional[BaseException]:
        return self._exception


class SerialPool(Pool):
    """Runs tasks in the calling thread, with the same error semantics as a threaded pool."""

    def __init__(self):
        self._exception: Optional[BaseException] = None

    def post(self, task: Task) -> None:
        if self._exception is not None:
            raise self._exception
        try:
            task()
        except Exception as e:
            self._exception = e

    def join(self) -> None:
        if self._exception is not None:
            raise self._exception


class ParallelizedPool(Pool):
    """Runs tasks across a fixed number of threads.

    ``queue_size`` is how many tasks may wait before ``post`` blocks;
    ``threads`` defaults to ``queue_size``, so at most that many tasks run at once.
    """

    def __init__(self, queue_size: int, threads: Optional[int] = None):
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._exception: Optional[BaseException] = None
        self._error_lock = threading.Lock()
        self._joined = False
        self._threads: List[threading.Thread] = [
            threading.Thread(target=self._work, name=f"sync-pool-{i}", daemon=True)
            for i in range(threads or queue_size)
        ]
        for t in self._threads:
            t.start()

    def _work(self) -> None:
        while True:
            task = self._queue.get()
            if task is _STOP:
                return
            if self._exception is not None:
                continue
            try:
                task()
            except Exception as e:
                with self._error_lock:
                    if self._exception is None:
                        logger.error(f"Pool task failed: {type(e).__name__}: {e}")
                        self._exception = e

    def post(self, task: Task) -> None:
        if self._exception is not None:
            raise self._exception
        if self._joined:
            raise RuntimeError("Cannot post to a pool that has been joined")
        self._queue.put(task)

    def join(self) -> None:
        if not self._joined:
            self._joined = True
            for _ in self._threads:
                self._queue.put(_STOP)
            for t in self._threads:
                t.join()
        if self._exception is not None:
            raise self._exception


def pool_for(parallelism: int) -> Pool:
    """A serial pool for parallelism of 1, otherwise a threaded pool of that size."""
    if parallelism <= 1:
        return SerialPool()
    return ParallelizedPool(parallelism)
