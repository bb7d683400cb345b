"""
lists-store — queue-confined object caches.

Purpose
- Hold a working set of pending inserts, updates and deletes keyed by ``(entity, record_id)``.
- Serve reads that overlay pending changes on the parent cache's view or the store.
- Save pending changes into the parent cache (child caches) or the store (store-bound caches).

Concurrency
- Every cache is confined to one ``SerialQueue``. Public methods called from another
  thread are marshalled onto that queue and waited for; calls already on the queue
  run inline. Pending-change state is only ever touched from the queue's worker.
- A child cache reads and saves through ``parent.perform_and_wait``; parents never
  wait on children, so the two queues cannot deadlock.

Pending-change merge rules
- insert + update -> insert with merged values
- insert + delete -> no change
- update + update -> update with merged values
- update + delete -> delete
- delete + insert (explicit id) -> update with the full inserted values
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, TypeVar

from lists_store.observability.logging import correlation_scope
from lists_store.persistence.store import ChangeKind, EncryptedStore, PendingChange

if TYPE_CHECKING:
    from lists_store.observability.metrics import MetricsRegistry
    from lists_store.persistence.model import ManagedModel
    from lists_store.utils.concurrency import SerialQueue

T = TypeVar("T")

_SAVE_ATTEMPTS_METRIC: Final[str] = "cache_save_attempts"
_SAVE_FAILURES_METRIC: Final[str] = "cache_save_failures"

logger = logging.getLogger(__name__)


class CacheError(RuntimeError):
    """Base class for object cache errors."""


class CacheConfigurationError(CacheError, ValueError):
    """Raised when a cache is bound to neither or both of a store and a parent."""


class RecordNotFoundError(CacheError, LookupError):
    """Raised when an update or delete targets a record the cache cannot see."""


class DuplicateRecordError(CacheError):
    """Raised when an insert reuses a visible record id."""


class CacheConflictError(CacheError):
    """Raised when a child's change cannot be merged into its parent's pending set."""


class CacheSaveError(CacheError):
    """Raised when a save fails; the cache keeps its pending changes."""

    def __init__(self, message: str, *, cache_name: str, cause: BaseException) -> None:
        super().__init__(message)
        self.cache_name = cache_name
        self.cause = cause

    @property
    def error_type(self) -> str:
        return type(self.cause).__name__


@dataclass(frozen=True, slots=True)
class Record:
    """Read-only snapshot of one record as seen by a cache."""

    entity: str
    record_id: str
    values: Mapping[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


WhereClause = Mapping[str, object] | Callable[[Record], bool]


@dataclass(slots=True)
class _Pending:
    kind: ChangeKind
    values: dict[str, Any]


_Key = tuple[str, str]


class ObjectCache:
    """Working set of pending mutations confined to one serial queue."""

    def __init__(
        self,
        name: str,
        queue: SerialQueue,
        model: ManagedModel,
        *,
        store: EncryptedStore | None = None,
        parent: ObjectCache | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if (store is None) == (parent is None):
            raise CacheConfigurationError(
                f"cache {name!r} must be bound to exactly one of a store or a parent cache"
            )
        if parent is not None and parent.model is not model:
            raise CacheConfigurationError(f"cache {name!r} must share its parent's model")
        self._name = name
        self._queue = queue
        self._model = model
        self._store = store
        self._parent = parent
        self._metrics = metrics
        self._pending: dict[_Key, _Pending] = {}
        self._save_attempts = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def queue(self) -> SerialQueue:
        return self._queue

    @property
    def model(self) -> ManagedModel:
        return self._model

    @property
    def store(self) -> EncryptedStore | None:
        return self._store

    @property
    def parent(self) -> ObjectCache | None:
        return self._parent

    @property
    def save_attempts(self) -> int:
        return self._save_attempts

    @property
    def has_changes(self) -> bool:
        return self._queue.perform_and_wait(lambda: bool(self._pending))

    def perform(self, fn: Callable[..., T], /, *args: object, **kwargs: object) -> Future[T]:
        """Enqueue ``fn`` on this cache's queue without waiting."""

        return self._queue.perform(fn, *args, **kwargs)

    def perform_and_wait(
        self,
        fn: Callable[..., T],
        /,
        *args: object,
        timeout: float | None = None,
        **kwargs: object,
    ) -> T:
        return self._queue.perform_and_wait(fn, *args, timeout=timeout, **kwargs)

    def insert(self, entity: str, /, **values: object) -> Record:
        """Stage a new record with a generated id and return its snapshot."""

        return self.insert_values(entity, values)

    def insert_values(
        self,
        entity: str,
        values: Mapping[str, object],
        *,
        record_id: str | None = None,
    ) -> Record:
        return self._queue.perform_and_wait(self._insert, entity, dict(values), record_id)

    def update(self, entity: str, record_id: str, /, **values: object) -> Record:
        return self._queue.perform_and_wait(self._update, entity, record_id, dict(values))

    def delete(self, entity: str, record_id: str) -> None:
        self._queue.perform_and_wait(self._delete, entity, record_id)

    def get(self, entity: str, record_id: str) -> Record | None:
        return self._queue.perform_and_wait(self._get, entity, record_id)

    def fetch(
        self,
        entity: str,
        *,
        where: WhereClause | None = None,
        order_by: str | Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        """Return records of ``entity`` visible to this cache.

        ``where`` is either a mapping of property equality filters or a predicate
        over ``Record``. ``order_by`` names one or more properties; a leading ``-``
        sorts descending. Without ``order_by``, stored records come first in
        insertion order, followed by records staged in this cache.
        """

        return self._queue.perform_and_wait(self._fetch, entity, where, order_by, limit)

    def count(self, entity: str, *, where: WhereClause | None = None) -> int:
        return len(self.fetch(entity, where=where))

    def pending_changes(self) -> tuple[PendingChange, ...]:
        return self._queue.perform_and_wait(self._snapshot_changes)

    def save(self) -> int:
        """Push pending changes to the parent cache or the store; return how many were saved."""

        return self._queue.perform_and_wait(self._save)

    def rollback(self) -> int:
        """Discard pending changes and return how many were dropped."""

        return self._queue.perform_and_wait(self._rollback)

    def _insert(self, entity: str, values: dict[str, Any], record_id: str | None) -> Record:
        description = self._model.entity(entity)
        normalized = description.normalize_values(values, partial=False)
        rid = record_id if record_id is not None else uuid.uuid4().hex
        if not isinstance(rid, str) or not rid.strip():
            raise ValueError("record_id must be a non-empty string")
        if self._view(entity, rid) is not None:
            raise DuplicateRecordError(f"{entity} record {rid} already exists")
        _merge_change(self._pending, PendingChange("insert", entity, rid, normalized))
        return Record(entity=entity, record_id=rid, values=description.materialize(normalized))

    def _update(self, entity: str, record_id: str, values: dict[str, Any]) -> Record:
        description = self._model.entity(entity)
        normalized = description.normalize_values(values, partial=True)
        current = self._view(entity, record_id)
        if current is None:
            raise RecordNotFoundError(f"{entity} record {record_id} not found")
        _merge_change(self._pending, PendingChange("update", entity, record_id, normalized))
        current.update(normalized)
        return Record(entity=entity, record_id=record_id, values=current)

    def _delete(self, entity: str, record_id: str) -> None:
        self._model.entity(entity)
        if self._view(entity, record_id) is None:
            raise RecordNotFoundError(f"{entity} record {record_id} not found")
        _merge_change(self._pending, PendingChange("delete", entity, record_id))

    def _get(self, entity: str, record_id: str) -> Record | None:
        self._model.entity(entity)
        values = self._view(entity, record_id)
        if values is None:
            return None
        return Record(entity=entity, record_id=record_id, values=values)

    def _fetch(
        self,
        entity: str,
        where: WhereClause | None,
        order_by: str | Sequence[str] | None,
        limit: int | None,
    ) -> list[Record]:
        description = self._model.entity(entity)
        if limit is not None and (isinstance(limit, bool) or limit < 0):
            raise ValueError("limit must be >= 0")
        sort_keys = _parse_order_by(order_by, description.property_names, entity)
        predicate = _build_predicate(where, description.property_names, entity)

        records = [
            Record(entity=entity, record_id=rid, values=values)
            for rid, values in self._view_all(entity).items()
        ]
        records = [record for record in records if predicate(record)]
        # Stable sorts applied from the last key to the first give a multi-key order.
        for key, descending in reversed(sort_keys):
            records.sort(
                key=lambda record, k=key: _sort_value(record.values.get(k)),
                reverse=descending,
            )
        if limit is not None:
            records = records[:limit]
        return records

    def _view(self, entity: str, record_id: str) -> dict[str, Any] | None:
        pending = self._pending.get((entity, record_id))
        if pending is not None and pending.kind == "delete":
            return None
        if pending is not None and pending.kind == "insert":
            return self._model.entity(entity).materialize(pending.values)

        base = self._base_view(entity, record_id)
        if pending is None or base is None:
            return base
        base.update(pending.values)
        return base

    def _view_all(self, entity: str) -> dict[str, dict[str, Any]]:
        if self._parent is not None:
            merged = self._parent.perform_and_wait(self._parent._view_all, entity)
        else:
            merged = self._require_store().load_all(entity)

        description = self._model.entity(entity)
        for (pending_entity, rid), pending in self._pending.items():
            if pending_entity != entity:
                continue
            if pending.kind == "delete":
                merged.pop(rid, None)
            elif pending.kind == "insert":
                merged[rid] = description.materialize(pending.values)
            elif rid in merged:
                merged[rid].update(pending.values)
        return merged

    def _base_view(self, entity: str, record_id: str) -> dict[str, Any] | None:
        if self._parent is not None:
            return self._parent.perform_and_wait(self._parent._view, entity, record_id)
        return self._require_store().load(entity, record_id)

    def _snapshot_changes(self) -> tuple[PendingChange, ...]:
        return tuple(
            PendingChange(pending.kind, entity, rid, dict(pending.values))
            for (entity, rid), pending in self._pending.items()
        )

    def _save(self) -> int:
        self._save_attempts += 1
        labels = {"cache": self._name}
        if self._metrics is not None:
            self._metrics.inc(_SAVE_ATTEMPTS_METRIC, labels=labels)

        changes = self._snapshot_changes()
        if not changes:
            return 0

        with correlation_scope(cache=self._name):
            try:
                if self._parent is not None:
                    self._parent.perform_and_wait(self._parent._absorb, changes)
                else:
                    self._require_store().apply_changes(changes)
            except Exception as exc:
                if self._metrics is not None:
                    self._metrics.inc(_SAVE_FAILURES_METRIC, labels=labels)
                raise CacheSaveError(
                    f"cache {self._name!r} failed to save {len(changes)} change(s): {exc}",
                    cache_name=self._name,
                    cause=exc,
                ) from exc

            self._pending.clear()
            target = self._parent.name if self._parent is not None else "store"
            logger.debug("saved pending changes", extra={"changes": len(changes), "target": target})
        return len(changes)

    def _absorb(self, changes: Sequence[PendingChange]) -> None:
        # All-or-nothing: merge into a copy so a conflict leaves this cache untouched.
        staged = {key: _Pending(item.kind, dict(item.values)) for key, item in self._pending.items()}
        for change in changes:
            _merge_change(staged, change)
        self._pending = staged

    def _rollback(self) -> int:
        dropped = len(self._pending)
        self._pending.clear()
        return dropped

    def _require_store(self) -> EncryptedStore:
        if self._store is None:
            raise CacheConfigurationError(f"cache {self._name!r} has no store")
        return self._store

    def __repr__(self) -> str:
        target = f"parent={self._parent.name!r}" if self._parent is not None else "store"
        return f"ObjectCache(name={self._name!r}, {target})"


def _merge_change(pending: dict[_Key, _Pending], change: PendingChange) -> None:
    key = (change.entity, change.record_id)
    existing = pending.get(key)

    if change.kind == "insert":
        if existing is not None and existing.kind == "delete":
            pending[key] = _Pending("update", dict(change.values))
        else:
            pending[key] = _Pending("insert", dict(change.values))
        return

    if change.kind == "update":
        if existing is None:
            pending[key] = _Pending("update", dict(change.values))
        elif existing.kind == "delete":
            raise CacheConflictError(
                f"{change.entity} record {change.record_id} was deleted before this update"
            )
        else:
            existing.values.update(change.values)
        return

    if change.kind == "delete":
        if existing is not None and existing.kind == "insert":
            del pending[key]
        else:
            pending[key] = _Pending("delete", {})
        return

    raise CacheError(f"unsupported change kind: {change.kind!r}")


def _parse_order_by(
    order_by: str | Sequence[str] | None,
    property_names: frozenset[str],
    entity: str,
) -> list[tuple[str, bool]]:
    if order_by is None:
        return []
    items = [order_by] if isinstance(order_by, str) else list(order_by)
    out: list[tuple[str, bool]] = []
    for item in items:
        descending = item.startswith("-")
        key = item[1:] if descending else item
        if key not in property_names:
            raise ValueError(f"cannot order {entity} by unknown property {key!r}")
        out.append((key, descending))
    return out


def _build_predicate(
    where: WhereClause | None,
    property_names: frozenset[str],
    entity: str,
) -> Callable[[Record], bool]:
    if where is None:
        return lambda record: True
    if callable(where):
        return where
    unknown = sorted(key for key in where if key not in property_names)
    if unknown:
        raise ValueError(f"cannot filter {entity} by unknown properties {unknown}")
    expected = dict(where)
    return lambda record: all(record.values.get(k) == v for k, v in expected.items())


def _sort_value(value: object) -> tuple[int, object]:
    # None sorts first; mixed types fall back to their string form.
    if value is None:
        return (0, "")
    if isinstance(value, (bool, int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, repr(value))


__all__ = [
    "CacheConfigurationError",
    "CacheConflictError",
    "CacheError",
    "CacheSaveError",
    "DuplicateRecordError",
    "ObjectCache",
    "Record",
    "RecordNotFoundError",
    "WhereClause",
]
