"""Serial queue ordering, re-entrancy, shutdown, and timeout tests."""

from __future__ import annotations

import threading
from concurrent.futures import Future

import pytest

from lists_store.utils.concurrency import QueueClosedError, SerialQueue, wait_with_timeout


def test_tasks_run_in_fifo_order_on_one_worker() -> None:
    queue = SerialQueue("fifo")
    seen: list[int] = []
    threads: set[int] = set()

    def record(index: int) -> None:
        seen.append(index)
        threads.add(threading.get_ident())

    try:
        futures = [queue.perform(record, index) for index in range(50)]
        for future in futures:
            future.result(timeout=5)
    finally:
        queue.shutdown()

    assert seen == list(range(50))
    assert len(threads) == 1
    assert threading.get_ident() not in threads


def test_perform_and_wait_from_the_queue_runs_inline() -> None:
    queue = SerialQueue("reentrant")

    def outer() -> tuple[bool, str]:
        inner = queue.perform_and_wait(lambda: "inner", timeout=1)
        return queue.is_current(), inner

    try:
        assert queue.perform_and_wait(outer, timeout=5) == (True, "inner")
    finally:
        queue.shutdown()
    assert queue.is_current() is False


def test_perform_and_wait_reraises_task_errors() -> None:
    queue = SerialQueue("errors")

    def broken() -> None:
        raise KeyError("missing")

    try:
        with pytest.raises(KeyError):
            queue.perform_and_wait(broken, timeout=5)
        assert queue.perform_and_wait(lambda value: value * 2, 21) == 42
    finally:
        queue.shutdown()


def test_shutdown_drains_then_rejects_new_work() -> None:
    queue = SerialQueue("drain")
    seen: list[str] = []
    started = threading.Event()
    release = threading.Event()

    def hold() -> None:
        started.set()
        release.wait(5)
        seen.append("hold")

    queue.perform(hold)
    queue.perform(seen.append, "queued")
    assert started.wait(5)
    release.set()
    queue.shutdown()
    queue.shutdown()

    assert seen == ["hold", "queued"]
    assert queue.closed is True
    assert "closed" in repr(queue)
    with pytest.raises(QueueClosedError):
        queue.perform(seen.append, "late")


def test_queue_name_is_required() -> None:
    with pytest.raises(ValueError):
        SerialQueue("  ")
    queue = SerialQueue(" background ")
    try:
        assert queue.name == "background"
    finally:
        queue.shutdown()


def test_wait_with_timeout() -> None:
    pending: Future[int] = Future()

    with pytest.raises(ValueError):
        wait_with_timeout(pending, 0)
    with pytest.raises(TimeoutError, match="timed out after 0.01 seconds"):
        wait_with_timeout(pending, 0.01)

    pending.set_result(7)
    assert wait_with_timeout(pending, None) == 7
