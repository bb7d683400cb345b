"""In-process notification center carrying application lifecycle notifications."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Final

from lists_store.constants import APP_DID_ENTER_BACKGROUND, APP_WILL_TERMINATE

_DEFAULT_HISTORY_SIZE: Final[int] = 256
_DEFAULT_ERROR_BUFFER: Final[int] = 256

LIFECYCLE_NOTIFICATIONS: Final[frozenset[str]] = frozenset(
    {APP_WILL_TERMINATE, APP_DID_ENTER_BACKGROUND}
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Notification:
    name: str
    posted_at: datetime
    user_info: Mapping[str, object] = field(default_factory=dict)


Observer = Callable[[Notification], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Observer failure captured without interrupting the poster."""

    notification: str
    observer: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Observation:
    token: int
    name: str | None
    callback: Observer


class NotificationCenter:
    """Subject/observer dispatch; observers run synchronously on the posting thread.

    An observer that raises does not stop delivery to the remaining observers; the
    failure is returned from ``post`` and kept in ``dispatch_errors``.
    """

    def __init__(self, *, history_size: int = _DEFAULT_HISTORY_SIZE) -> None:
        if isinstance(history_size, bool) or not isinstance(history_size, int):
            raise ValueError("history_size must be an integer")
        if history_size <= 0:
            raise ValueError("history_size must be > 0")
        self._history = deque[Notification](maxlen=history_size)
        self._observations: dict[int, _Observation] = {}
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()

    def add_observer(self, name: str | None, callback: Observer) -> int:
        """Observe notifications named ``name`` (all notifications when ``None``)."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized = None if name is None else _normalize_name(name)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._observations[token] = _Observation(token, normalized, callback)
        return token

    def remove_observer(self, token: int) -> bool:
        """Remove an observation. Returns ``True`` when the token existed."""

        if isinstance(token, bool) or not isinstance(token, int):
            raise ValueError(f"token must be an integer, got {type(token).__name__}")
        with self._lock:
            return self._observations.pop(token, None) is not None

    def observer_count(self, name: str | None = None) -> int:
        with self._lock:
            if name is None:
                return len(self._observations)
            return sum(1 for item in self._observations.values() if item.name == name)

    def post(
        self,
        name: str,
        user_info: Mapping[str, object] | None = None,
    ) -> tuple[DispatchError, ...]:
        notification = Notification(
            name=_normalize_name(name),
            posted_at=datetime.now(tz=UTC),
            user_info=dict(user_info or {}),
        )
        with self._lock:
            self._history.append(notification)
            observations = tuple(self._observations.values())

        errors: list[DispatchError] = []
        for observation in observations:
            if observation.name is not None and observation.name != notification.name:
                continue
            try:
                observation.callback(notification)
            except Exception as exc:  # noqa: BLE001
                error = DispatchError(
                    notification=notification.name,
                    observer=_callback_name(observation.callback),
                    error_type=type(exc).__name__,
                    message=str(exc),
                )
                logger.warning(
                    "notification observer failed",
                    extra={
                        "notification": notification.name,
                        "observer": error.observer,
                        "error_type": error.error_type,
                    },
                )
                errors.append(error)

        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    def history(self, *, name: str | None = None) -> tuple[Notification, ...]:
        with self._lock:
            items = tuple(self._history)
        if name is None:
            return items
        return tuple(item for item in items if item.name == name)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._dispatch_errors)


_DEFAULT_CENTER_LOCK = threading.Lock()
_DEFAULT_CENTER: NotificationCenter | None = None


def default_notification_center() -> NotificationCenter:
    """Return the process-wide notification center, creating it on first use."""

    global _DEFAULT_CENTER
    with _DEFAULT_CENTER_LOCK:
        if _DEFAULT_CENTER is None:
            _DEFAULT_CENTER = NotificationCenter()
        return _DEFAULT_CENTER


def _normalize_name(value: object) -> str:
    if not isinstance(value, str):
        raise ValueError(f"notification name must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError("notification name must not be empty")
    return normalized


def _callback_name(callback: Callable[..., object]) -> str:
    qualname = getattr(callback, "__qualname__", None)
    module = getattr(callback, "__module__", None)
    if isinstance(qualname, str) and isinstance(module, str):
        return f"{module}.{qualname}"
    return repr(callback)


__all__ = [
    "LIFECYCLE_NOTIFICATIONS",
    "DispatchError",
    "Notification",
    "NotificationCenter",
    "Observer",
    "default_notification_center",
]
