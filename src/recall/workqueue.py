"""Bounded background work queue.

Used for writes that callers do not wait on (e.g. staging KYC suggestions).
Work is never detached: every task goes through a bounded queue, failures are
logged and counted, and join() lets callers wait for the backlog to drain.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

_STOP = object()


class QueueFull(RuntimeError):
    """Raised by WorkQueue.submit() when the queue is at capacity."""


class WorkQueue:
    """Fixed pool of daemon worker threads draining a bounded FIFO queue.

    Args:
        max_size: Maximum number of queued (not yet running) tasks.
        workers: Number of worker threads.
        name: Thread-name prefix, used in log records.
    """

    def __init__(self, max_size: int = 256, workers: int = 1, name: str = "recall-worker") -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, max_size))
        self._lock = threading.Lock()
        self._closed = False
        self.failures = 0
        self.completed = 0
        self._threads = [
            threading.Thread(target=self._run, name=f"{name}-{i}", daemon=True)
            for i in range(max(1, workers))
        ]
        for thread in self._threads:
            thread.start()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Queue *fn(*args, **kwargs)* without blocking.

        Raises:
            QueueFull: If the queue is at capacity.
            RuntimeError: If the queue has been closed.
        """
        if self._closed:
            raise RuntimeError("WorkQueue is closed")
        try:
            self._queue.put_nowait((fn, args, kwargs))
        except queue.Full as exc:
            raise QueueFull(f"work queue full ({self._queue.maxsize} pending tasks)") from exc

    def join(self) -> None:
        """Block until every submitted task has finished."""
        self._queue.join()

    def close(self, wait: bool = True) -> None:
        """Stop accepting work and shut the workers down after the backlog."""
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()

    def __enter__(self) -> WorkQueue:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                fn, args, kwargs = item
                try:
                    fn(*args, **kwargs)
                except Exception:
                    with self._lock:
                        self.failures += 1
                    logger.exception("background task %s failed", getattr(fn, "__name__", fn))
                else:
                    with self._lock:
                        self.completed += 1
            finally:
                self._queue.task_done()
