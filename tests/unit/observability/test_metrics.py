"""
lists-store — unit tests for observability metrics

Purpose
- Verify thread-safe metric updates and deterministic snapshot/export behavior.
"""

from __future__ import annotations

import json
import threading

import pytest

from lists_store.observability.metrics import MetricsRegistry


def test_thread_safe_counter_increments() -> None:
    registry = MetricsRegistry()

    def worker() -> None:
        for _ in range(2000):
            registry.inc("cache_save_attempts", labels={"cache": "background"})

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.get_counter("cache_save_attempts", labels={"cache": "background"}) == 12_000.0
    assert registry.get_counter("cache_save_attempts") == 0.0


def test_snapshot_is_deterministic_and_json_serializable() -> None:
    registry = MetricsRegistry()
    registry.inc("flushes_scheduled", 2, labels={"trigger": "manual", "a": "1"})
    registry.observe("flush_seconds", 0.5)
    registry.observe("flush_seconds", 1.5)

    first = registry.snapshot()
    second = registry.snapshot()

    assert first == second
    assert first["counters"] == {"flushes_scheduled{a=1,trigger=manual}": 2.0}
    assert registry.get_timing("flush_seconds") == {
        "count": 2,
        "sum": 2.0,
        "max": 1.5,
        "avg": 1.0,
    }
    assert json.loads(registry.to_json())["timings"]["flush_seconds"]["count"] == 2


def test_reset_clears_everything() -> None:
    registry = MetricsRegistry()
    registry.inc("store_opens", labels={"store": "primary"})
    registry.observe("flush_seconds", 0.1)

    registry.reset()

    snapshot = registry.snapshot()
    assert snapshot["counters"] == {}
    assert snapshot["timings"] == {}
    assert registry.get_timing("flush_seconds") is None


@pytest.mark.parametrize(
    ("name", "amount", "labels"),
    [
        ("", 1.0, None),
        ("store_opens", -1.0, None),
        ("store_opens", float("nan"), None),
        ("store_opens", 1.0, {"store": " "}),
        ("store_opens", True, None),
    ],
)
def test_invalid_increments_are_rejected(
    name: str, amount: float, labels: dict[str, str] | None
) -> None:
    with pytest.raises(ValueError):
        MetricsRegistry().inc(name, amount, labels=labels)
