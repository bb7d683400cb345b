"""Queue-confinement primitives used by the object caches."""

from __future__ import annotations

import queue
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, Final, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

T = TypeVar("T")

_THREAD_NAME_PREFIX: Final[str] = "lists-store"

_Task = tuple[Future[Any], "Callable[..., Any]", tuple[object, ...], dict[str, object]]


class QueueClosedError(RuntimeError):
    """Raised when work is submitted to a queue after ``shutdown``."""


class SerialQueue:
    """Single-worker execution queue; tasks run one at a time in FIFO order.

    Every object cache is confined to exactly one queue. ``perform`` enqueues
    and returns immediately, ``perform_and_wait`` blocks the caller until the
    task ran. Calling ``perform_and_wait`` from the queue's own worker thread
    runs the task inline, so nested calls never deadlock.

    The worker is a daemon thread fed by a ``queue.SimpleQueue``; it keeps
    accepting work while ``atexit`` callbacks run.
    """

    def __init__(self, name: str) -> None:
        normalized = name.strip() if isinstance(name, str) else ""
        if not normalized:
            raise ValueError("queue name must not be empty")
        self._name = normalized
        self._lock = threading.Lock()
        self._closed = False
        self._tasks: queue.SimpleQueue[_Task | None] = queue.SimpleQueue()
        self._worker = threading.Thread(
            target=self._run,
            name=f"{_THREAD_NAME_PREFIX}-{normalized}",
            daemon=True,
        )
        self._worker.start()

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    def is_current(self) -> bool:
        """Return ``True`` when called from this queue's worker thread."""

        return threading.get_ident() == self._worker.ident

    def perform(self, fn: Callable[..., T], /, *args: object, **kwargs: object) -> Future[T]:
        """Enqueue ``fn`` and return a future for its result."""

        future: Future[T] = Future()
        with self._lock:
            if self._closed:
                raise QueueClosedError(f"queue {self._name!r} is shut down")
            self._tasks.put((future, fn, args, kwargs))
        return future

    def perform_and_wait(
        self,
        fn: Callable[..., T],
        /,
        *args: object,
        timeout: float | None = None,
        **kwargs: object,
    ) -> T:
        """Run ``fn`` on the queue and return its result, re-raising its exception."""

        if self.is_current():
            return fn(*args, **kwargs)
        return wait_with_timeout(self.perform(fn, *args, **kwargs), timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting work; already enqueued tasks still run."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._tasks.put(None)
        if wait and not self.is_current():
            self._worker.join()

    def _run(self) -> None:
        while True:
            task = self._tasks.get()
            if task is None:
                return
            future, fn, args, kwargs = task
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"SerialQueue(name={self._name!r}, {state})"


def wait_with_timeout(future: Future[T], timeout_seconds: float | None) -> T:
    """Wait for ``future`` with an optional bounded timeout."""

    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")
    try:
        return future.result(timeout=timeout_seconds)
    except TimeoutError as exc:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from exc


__all__ = [
    "QueueClosedError",
    "SerialQueue",
    "wait_with_timeout",
]
