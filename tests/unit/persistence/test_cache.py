"""Object cache pending-change merging, child/parent promotion, and save tests."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest

from lists_store.observability.metrics import MetricsRegistry
from lists_store.persistence.cache import (
    CacheConfigurationError,
    CacheConflictError,
    CacheSaveError,
    DuplicateRecordError,
    ObjectCache,
    RecordNotFoundError,
)
from lists_store.persistence.model import RecordValidationError
from lists_store.persistence.store import EncryptedStore, StoreConflictError
from lists_store.utils.concurrency import SerialQueue

from . import BASE_TS, list_values, open_store

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def queues() -> Iterator[tuple[SerialQueue, SerialQueue]]:
    foreground = SerialQueue("foreground")
    background = SerialQueue("background")
    yield foreground, background
    foreground.shutdown()
    background.shutdown()


@pytest.fixture()
def store(tmp_path: Path) -> EncryptedStore:
    return open_store(tmp_path)


def _pair(
    store: EncryptedStore,
    queues: tuple[SerialQueue, SerialQueue],
    metrics: MetricsRegistry | None = None,
) -> tuple[ObjectCache, ObjectCache]:
    foreground_queue, background_queue = queues
    background = ObjectCache(
        "background", background_queue, store.model, store=store, metrics=metrics
    )
    foreground = ObjectCache(
        "foreground", foreground_queue, store.model, parent=background, metrics=metrics
    )
    return foreground, background


def test_cache_binding_is_validated(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground_queue, background_queue = queues
    background = ObjectCache("background", background_queue, store.model, store=store)

    with pytest.raises(CacheConfigurationError):
        ObjectCache("orphan", foreground_queue, store.model)
    with pytest.raises(CacheConfigurationError):
        ObjectCache("both", foreground_queue, store.model, store=store, parent=background)


def test_insert_validates_and_marks_dirty(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, background = _pair(store, queues)

    record = foreground.insert("List", **list_values())

    assert len(record.record_id) == 32
    assert record["name"] == "Groceries"
    assert record["created_at"] == BASE_TS.isoformat()
    assert record["items"] == []
    assert foreground.has_changes is True
    assert background.has_changes is False
    with pytest.raises(RecordValidationError):
        foreground.insert("List", name="missing created_at")


def test_child_save_promotes_into_parent_without_touching_disk(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, background = _pair(store, queues)
    record = foreground.insert("List", **list_values())

    assert foreground.save() == 1

    assert foreground.has_changes is False
    assert background.has_changes is True
    assert background.get("List", record.record_id) is not None
    assert store.count("List") == 0

    assert background.save() == 1
    assert background.has_changes is False
    assert store.count("List") == 1


def test_reads_overlay_pending_changes_on_parent_and_store(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, background = _pair(store, queues)
    stored = background.insert("List", **list_values("Stored"))
    background.save()

    foreground.update("List", stored.record_id, name="Renamed")
    staged = foreground.insert("List", **list_values("Staged"))

    assert foreground.get("List", stored.record_id)["name"] == "Renamed"
    assert background.get("List", stored.record_id)["name"] == "Stored"
    assert [record["name"] for record in foreground.fetch("List", order_by="name")] == [
        "Renamed",
        "Staged",
    ]
    assert foreground.count("List", where={"name": "Staged"}) == 1
    assert background.get("List", staged.record_id) is None

    foreground.delete("List", stored.record_id)
    assert foreground.get("List", stored.record_id) is None
    assert foreground.count("List") == 1


def test_fetch_ordering_predicates_and_limits(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, _ = _pair(store, queues)
    for name in ("b", "c", "a"):
        foreground.insert("Item", name=name, done=name != "b")

    descending = foreground.fetch("Item", order_by="-name", limit=2)
    done_first = foreground.fetch("Item", order_by=["-done", "name"])
    undone = foreground.fetch("Item", where=lambda record: not record["done"])

    assert [record["name"] for record in descending] == ["c", "b"]
    assert [record["name"] for record in done_first] == ["a", "c", "b"]
    assert [record["name"] for record in undone] == ["b"]
    with pytest.raises(ValueError):
        foreground.fetch("Item", order_by="weight")
    with pytest.raises(ValueError):
        foreground.fetch("Item", where={"weight": 1})


def test_pending_change_merge_rules(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    _, background = _pair(store, queues)
    stored = background.insert("List", **list_values("Stored"))
    background.save()

    inserted = background.insert("List", **list_values("Fresh"))
    background.update("List", inserted.record_id, name="Fresher")
    dropped = background.insert("List", **list_values("Dropped"))
    background.delete("List", dropped.record_id)
    background.update("List", stored.record_id, name="One")
    background.update("List", stored.record_id, name="Two")

    changes = {change.record_id: change for change in background.pending_changes()}

    assert set(changes) == {inserted.record_id, stored.record_id}
    assert changes[inserted.record_id].kind == "insert"
    assert changes[inserted.record_id].values["name"] == "Fresher"
    assert changes[stored.record_id].kind == "update"
    assert changes[stored.record_id].values == {"name": "Two"}

    background.delete("List", stored.record_id)
    assert {change.kind for change in background.pending_changes()} == {"insert", "delete"}


def test_update_and_delete_of_unknown_records(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, _ = _pair(store, queues)
    record = foreground.insert("List", **list_values())

    with pytest.raises(RecordNotFoundError):
        foreground.update("List", "ghost", name="x")
    with pytest.raises(RecordNotFoundError):
        foreground.delete("List", "ghost")
    with pytest.raises(DuplicateRecordError):
        foreground.insert_values("List", list_values(), record_id=record.record_id)


def test_rollback_clears_dirty_flag(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, _ = _pair(store, queues)
    foreground.insert("List", **list_values())

    assert foreground.rollback() == 1
    assert foreground.has_changes is False
    assert foreground.count("List") == 0


def test_child_save_conflict_keeps_both_pending_sets(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, background = _pair(store, queues)
    stored = background.insert("List", **list_values())
    background.save()

    foreground.update("List", stored.record_id, name="Edited")
    background.delete("List", stored.record_id)

    with pytest.raises(CacheSaveError) as excinfo:
        foreground.save()

    assert isinstance(excinfo.value.cause, CacheConflictError)
    assert excinfo.value.error_type == "CacheConflictError"
    assert foreground.has_changes is True
    assert [change.kind for change in background.pending_changes()] == ["delete"]


def test_store_save_failure_keeps_changes_and_counts_metrics(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    metrics = MetricsRegistry()
    _, background = _pair(store, queues, metrics)
    record = background.insert("List", **list_values())
    other = open_store(store.path.parent, label="import")
    background.save()

    background.update("List", record.record_id, name="Edited")
    other_cache = ObjectCache("import", SerialQueue("import"), other.model, store=other)
    try:
        other_cache.delete("List", record.record_id)
        other_cache.save()
    finally:
        other_cache.queue.shutdown()

    with pytest.raises(CacheSaveError) as excinfo:
        background.save()

    assert isinstance(excinfo.value.cause, StoreConflictError)
    assert background.has_changes is True
    assert background.save_attempts == 2
    assert metrics.get_counter("cache_save_attempts", labels={"cache": "background"}) == 2.0
    assert metrics.get_counter("cache_save_failures", labels={"cache": "background"}) == 1.0


def test_clean_save_writes_nothing(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    _, background = _pair(store, queues)

    assert background.save() == 0
    assert store.count("List") == 0


def test_off_queue_calls_run_on_the_cache_queue(
    store: EncryptedStore, queues: tuple[SerialQueue, SerialQueue]
) -> None:
    foreground, _ = _pair(store, queues)
    seen: list[bool] = []

    def on_queue() -> str:
        seen.append(foreground.queue.is_current())
        return foreground.insert("List", **list_values()).record_id

    record_id = foreground.perform_and_wait(on_queue)

    assert seen == [True]
    assert foreground.queue.is_current() is False
    assert threading.current_thread() is threading.main_thread()
    assert foreground.get("List", record_id) is not None
