"""
lists-store — persistence coordinator.

Purpose
- Own one model, one store location, two store handles and three object caches:
  a foreground cache (child of the background cache), a background cache bound to
  the primary store handle, and an independent import cache bound to a second
  handle on the same file.
- Flush pending changes foreground -> background -> disk when the application
  is about to terminate or enters the background.

Setup
- Every component is created lazily, at most once, behind a memoizing accessor.
- ``open()`` builds everything eagerly and reports failure as a ``SetupResult``;
  accessors raise ``CoordinatorSetupError`` chained to the underlying cause.

Flush policy
- Save failures are logged with their error type and description, reported in the
  ``FlushReport``, and never re-raised. There is no retry.
- ``app-did-enter-background`` schedules a flush and returns immediately.
- ``app-will-terminate`` waits for the flush up to ``flush_timeout_seconds``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, TypeVar

from lists_store.constants import (
    APP_DID_ENTER_BACKGROUND,
    APP_WILL_TERMINATE,
    BACKGROUND_CACHE,
    DEFAULT_DOCUMENTS_DIR,
    DEFAULT_FLUSH_TIMEOUT_SECONDS,
    DEFAULT_MODEL_NAME,
    FOREGROUND_CACHE,
    IMPORT_CACHE,
)
from lists_store.lifecycle.notifications import (
    Notification,
    NotificationCenter,
    default_notification_center,
)
from lists_store.observability.logging import correlation_scope
from lists_store.observability.metrics import MetricsRegistry
from lists_store.persistence.cache import CacheSaveError, ObjectCache
from lists_store.persistence.crypto import (
    EnvironmentPassphrase,
    PassphraseError,
    PassphraseProvider,
)
from lists_store.persistence.model import ManagedModel, ModelError, load_model
from lists_store.persistence.store import (
    EncryptedStore,
    StoreError,
    StoreOptions,
    make_store,
    store_location,
)
from lists_store.utils.concurrency import QueueClosedError, SerialQueue, wait_with_timeout

T = TypeVar("T")

_SETUP_ERRORS: Final[tuple[type[BaseException], ...]] = (
    ModelError,
    StoreError,
    PassphraseError,
    OSError,
)
_DEFAULT_IMPORT_BATCH_SIZE: Final[int] = 500

logger = logging.getLogger(__name__)


class CoordinatorError(RuntimeError):
    """Base class for coordinator errors."""


class CoordinatorSetupError(CoordinatorError):
    """Raised when the model, a store handle, or a cache cannot be set up."""


class CoordinatorClosedError(CoordinatorError):
    """Raised when a closed coordinator is used."""


class FlushTimeoutError(CoordinatorError, TimeoutError):
    """Raised when a flush does not complete within its timeout."""


@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Everything a coordinator needs; one instance per coordinator."""

    model_name: str = DEFAULT_MODEL_NAME
    documents_dir: Path = field(default_factory=lambda: Path(DEFAULT_DOCUMENTS_DIR))
    resources_dir: Path | None = None
    passphrase_provider: PassphraseProvider = field(
        default_factory=EnvironmentPassphrase, repr=False
    )
    options: StoreOptions = field(default_factory=StoreOptions)
    flush_timeout_seconds: float = DEFAULT_FLUSH_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not isinstance(self.model_name, str) or not self.model_name.strip():
            raise ValueError("model_name must be a non-empty string")
        if self.flush_timeout_seconds <= 0:
            raise ValueError("flush_timeout_seconds must be > 0")
        object.__setattr__(self, "model_name", self.model_name.strip())
        object.__setattr__(self, "documents_dir", Path(self.documents_dir).expanduser())
        if self.resources_dir is not None:
            object.__setattr__(self, "resources_dir", Path(self.resources_dir).expanduser())

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        *,
        passphrase_provider: PassphraseProvider | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> StoreConfig:
        """Build a config from a validated ``load_config`` mapping."""

        store = settings["store"]
        lifecycle = settings["lifecycle"]
        provider = passphrase_provider or EnvironmentPassphrase(
            env_name=store["passphrase_env"], environ=environ
        )
        resources_dir = store.get("resources_dir")
        return cls(
            model_name=store["model_name"],
            documents_dir=Path(store["documents_dir"]),
            resources_dir=Path(resources_dir) if resources_dir else None,
            passphrase_provider=provider,
            options=StoreOptions(
                infer_mapping_automatically=store["infer_mapping_automatically"],
                migrate_automatically=store["migrate_automatically"],
                busy_timeout_ms=store["busy_timeout_ms"],
                busy_retry_limit=store["busy_retry_limit"],
                busy_retry_backoff_ms=store["busy_retry_backoff_ms"],
                kdf_iterations=store["kdf_iterations"],
            ),
            flush_timeout_seconds=float(lifecycle["flush_timeout_seconds"]),
        )


@dataclass(frozen=True, slots=True)
class SetupResult:
    """Outcome of ``PersistenceCoordinator.open``; the caller decides whether to abort."""

    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_type(self) -> str | None:
        return None if self.error is None else type(self.error).__name__

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise CoordinatorSetupError(f"persistence setup failed: {self.error}") from self.error


@dataclass(frozen=True, slots=True)
class CacheFlushOutcome:
    cache: str
    attempted: bool
    saved_changes: int = 0
    error_type: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_type is None


@dataclass(frozen=True, slots=True)
class FlushReport:
    """Per-cache outcome of one flush-foreground -> flush-background invocation."""

    foreground: CacheFlushOutcome
    background: CacheFlushOutcome
    trigger: str = "manual"

    @property
    def ok(self) -> bool:
        return self.foreground.ok and self.background.ok

    @property
    def attempted(self) -> bool:
        return self.foreground.attempted or self.background.attempted


class PersistenceCoordinator:
    """Encrypted store stack with a foreground/background cache pair and an import cache."""

    def __init__(
        self,
        config: StoreConfig,
        *,
        notification_center: NotificationCenter | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._config = config
        self._center = (
            notification_center
            if notification_center is not None
            else default_notification_center()
        )
        self._metrics = metrics if metrics is not None else MetricsRegistry()
        self._lock = threading.RLock()
        self._closed = False

        self._queues = {
            name: SerialQueue(name) for name in (FOREGROUND_CACHE, BACKGROUND_CACHE, IMPORT_CACHE)
        }
        self._model: ManagedModel | None = None
        self._primary_store: EncryptedStore | None = None
        self._import_store: EncryptedStore | None = None
        self._background: ObjectCache | None = None
        self._foreground: ObjectCache | None = None
        self._import: ObjectCache | None = None

        self._observer_tokens = tuple(
            self._center.add_observer(name, self._handle_lifecycle_notification)
            for name in (APP_WILL_TERMINATE, APP_DID_ENTER_BACKGROUND)
        )

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def notification_center(self) -> NotificationCenter:
        return self._center

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def store_location(self) -> Path:
        return store_location(self._config.documents_dir, self._config.model_name)

    @property
    def model(self) -> ManagedModel:
        return self._memoized(
            "_model",
            "data model",
            lambda: load_model(self._config.model_name, self._config.resources_dir),
        )

    @property
    def primary_store(self) -> EncryptedStore:
        return self._memoized("_primary_store", "primary store", lambda: self._make_store("primary"))

    @property
    def import_store(self) -> EncryptedStore:
        return self._memoized("_import_store", "import store", lambda: self._make_store("import"))

    @property
    def background_cache(self) -> ObjectCache:
        """Private cache writing to disk; application code uses ``foreground_cache``."""

        return self._memoized(
            "_background",
            "background cache",
            lambda: ObjectCache(
                BACKGROUND_CACHE,
                self._queues[BACKGROUND_CACHE],
                self.model,
                store=self.primary_store,
                metrics=self._metrics,
            ),
        )

    @property
    def foreground_cache(self) -> ObjectCache:
        return self._memoized(
            "_foreground",
            "foreground cache",
            lambda: ObjectCache(
                FOREGROUND_CACHE,
                self._queues[FOREGROUND_CACHE],
                self.model,
                parent=self.background_cache,
                metrics=self._metrics,
            ),
        )

    @property
    def import_cache(self) -> ObjectCache:
        return self._memoized(
            "_import",
            "import cache",
            lambda: ObjectCache(
                IMPORT_CACHE,
                self._queues[IMPORT_CACHE],
                self.model,
                store=self.import_store,
                metrics=self._metrics,
            ),
        )

    def open(self) -> SetupResult:
        """Set up every component now and report the outcome instead of raising."""

        try:
            self.foreground_cache
            self.import_cache
        except CoordinatorSetupError as exc:
            cause = exc.__cause__ if exc.__cause__ is not None else exc
            return SetupResult(error=cause)
        logger.info(
            "persistence stack ready",
            extra={"model": self._config.model_name, "path": str(self.store_location)},
        )
        return SetupResult()

    def schedule_flush(self, *, trigger: str = "manual") -> Future[FlushReport]:
        """Queue flush-foreground, which then queues flush-background; return the report future."""

        result: Future[FlushReport] = Future()
        with self._lock:
            self._ensure_open()
            initialized = self._foreground is not None
        if not initialized:
            # No cache exists yet, so nothing can be dirty.
            result.set_result(
                FlushReport(
                    foreground=CacheFlushOutcome(FOREGROUND_CACHE, attempted=False),
                    background=CacheFlushOutcome(BACKGROUND_CACHE, attempted=False),
                    trigger=trigger,
                )
            )
            return result

        foreground = self.foreground_cache
        background = self.background_cache
        started = time.monotonic()

        def flush_background(foreground_outcome: CacheFlushOutcome) -> None:
            try:
                background_outcome = self._save_if_dirty(background)
            except Exception as exc:
                result.set_exception(exc)
                return
            self._metrics.observe("flush_seconds", time.monotonic() - started)
            result.set_result(
                FlushReport(
                    foreground=foreground_outcome,
                    background=background_outcome,
                    trigger=trigger,
                )
            )

        def flush_foreground() -> None:
            try:
                foreground_outcome = self._save_if_dirty(foreground)
                background.perform(flush_background, foreground_outcome)
            except QueueClosedError as exc:
                result.set_exception(CoordinatorClosedError(f"flush interrupted: {exc}"))
            except Exception as exc:
                result.set_exception(exc)

        try:
            foreground.perform(flush_foreground)
        except QueueClosedError as exc:
            raise CoordinatorClosedError("coordinator queues are shut down") from exc
        self._metrics.inc("flushes_scheduled", labels={"trigger": trigger})
        return result

    def flush(self, timeout: float | None = None, *, trigger: str = "manual") -> FlushReport:
        """Flush and wait; raises ``FlushTimeoutError`` after ``timeout`` seconds."""

        timeout_seconds = self._config.flush_timeout_seconds if timeout is None else timeout
        future = self.schedule_flush(trigger=trigger)
        try:
            return wait_with_timeout(future, timeout_seconds)
        except TimeoutError as exc:
            if isinstance(exc, FlushTimeoutError):
                raise
            raise FlushTimeoutError(
                f"flush did not complete within {timeout_seconds} seconds"
            ) from exc

    def bulk_import(
        self,
        entity: str,
        rows: Iterable[Mapping[str, object]],
        *,
        batch_size: int = _DEFAULT_IMPORT_BATCH_SIZE,
        id_field: str | None = None,
    ) -> Future[int]:
        """Insert ``rows`` through the import cache, saving every ``batch_size`` rows.

        Runs entirely on the import queue, so it never waits on the foreground or
        background queues. The future resolves to the number of imported rows.
        """

        if isinstance(batch_size, bool) or batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        cache = self.import_cache
        materialized = [dict(row) for row in rows]

        def run_import() -> int:
            imported = 0
            with correlation_scope(cache=cache.name):
                for start in range(0, len(materialized), batch_size):
                    for row in materialized[start : start + batch_size]:
                        record_id = None
                        if id_field is not None:
                            raw_id = row.pop(id_field, None)
                            record_id = None if raw_id is None else str(raw_id)
                        cache.insert_values(entity, row, record_id=record_id)
                    imported += cache.save()
                logger.info("bulk import finished", extra={"entity": entity, "rows": imported})
            return imported

        return cache.perform(run_import)

    def close(self, *, flush: bool = True, timeout: float | None = None) -> FlushReport | None:
        """Unsubscribe, optionally flush, then shut down queues and store handles."""

        with self._lock:
            if self._closed:
                return None
            for token in self._observer_tokens:
                self._center.remove_observer(token)

        report: FlushReport | None = None
        try:
            if flush:
                report = self.flush(timeout, trigger="close")
        finally:
            with self._lock:
                self._closed = True
                for name in (FOREGROUND_CACHE, BACKGROUND_CACHE, IMPORT_CACHE):
                    self._queues[name].shutdown(wait=True)
                for store in (self._primary_store, self._import_store):
                    if store is not None:
                        store.close()
            logger.debug("persistence coordinator closed", extra={"model": self._config.model_name})
        return report

    def __enter__(self) -> PersistenceCoordinator:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    def _handle_lifecycle_notification(self, notification: Notification) -> None:
        with correlation_scope(notification=notification.name):
            if self._closed:
                return
            try:
                future = self.schedule_flush(trigger=notification.name)
            except RuntimeError as exc:
                logger.error(
                    "unable to schedule flush",
                    extra={"error_type": type(exc).__name__, "description": str(exc)},
                )
                return

            if notification.name != APP_WILL_TERMINATE:
                return
            if any(queue.is_current() for queue in self._queues.values()):
                # Waiting here would block the queue the flush needs.
                logger.warning("termination posted from a cache queue; flush not awaited")
                return
            try:
                report = wait_with_timeout(future, self._config.flush_timeout_seconds)
            except TimeoutError:
                logger.error(
                    "flush on termination timed out",
                    extra={"timeout_seconds": self._config.flush_timeout_seconds},
                )
                return
            except Exception as exc:
                logger.error(
                    "flush on termination failed",
                    extra={"error_type": type(exc).__name__, "description": str(exc)},
                )
                return
            logger.info(
                "flushed on termination",
                extra={"ok": report.ok, "attempted": report.attempted},
            )

    def _save_if_dirty(self, cache: ObjectCache) -> CacheFlushOutcome:
        if not cache.has_changes:
            return CacheFlushOutcome(cache.name, attempted=False)
        try:
            saved = cache.save()
        except CacheSaveError as exc:
            logger.error(
                "unable to save changes of %s cache",
                cache.name,
                extra={
                    "cache": cache.name,
                    "error_type": exc.error_type,
                    "description": str(exc.cause),
                },
            )
            return CacheFlushOutcome(
                cache.name,
                attempted=True,
                error_type=exc.error_type,
                error_message=str(exc.cause),
            )
        return CacheFlushOutcome(cache.name, attempted=True, saved_changes=saved)

    def _make_store(self, label: str) -> EncryptedStore:
        return make_store(
            self.model,
            self.store_location,
            self._config.passphrase_provider,
            self._config.options,
            label=label,
            metrics=self._metrics,
        )

    def _memoized(self, attr: str, component: str, factory: Callable[[], T]) -> T:
        with self._lock:
            self._ensure_open()
            value = getattr(self, attr)
            if value is not None:
                return value
            try:
                value = factory()
            except CoordinatorSetupError:
                raise
            except _SETUP_ERRORS as exc:
                logger.critical(
                    "unable to set up %s",
                    component,
                    extra={"error_type": type(exc).__name__, "description": str(exc)},
                )
                raise CoordinatorSetupError(f"unable to set up {component}: {exc}") from exc
            setattr(self, attr, value)
            return value

    def _ensure_open(self) -> None:
        if self._closed:
            raise CoordinatorClosedError("persistence coordinator is closed")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return (
            f"PersistenceCoordinator(model={self._config.model_name!r}, "
            f"path={str(self.store_location)!r}, {state})"
        )


__all__ = [
    "CacheFlushOutcome",
    "CoordinatorClosedError",
    "CoordinatorError",
    "CoordinatorSetupError",
    "FlushReport",
    "FlushTimeoutError",
    "PersistenceCoordinator",
    "SetupResult",
    "StoreConfig",
]
