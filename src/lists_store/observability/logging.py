"""
lists-store — structured logging.

Records from the ``lists_store`` logger tree go through a queue to a listener
thread that writes one JSON object per line to
``<log_dir>/<session_id>/lists_store.jsonl``, so cache queues never block on
file I/O.

Every line carries the session id plus whatever ``store``, ``cache`` and
``notification`` correlation fields were bound with ``correlation_scope`` in the
emitting thread. ``extra`` fields land under ``"fields"``. Passphrases, key
material, raw bytes and Fernet tokens are redacted unless redaction is disabled.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

LOG_FILENAME: Final[str] = "lists_store.jsonl"
REDACTED: Final[str] = "***REDACTED***"

_CORRELATION_KEYS: Final[tuple[str, ...]] = ("session_id", "store", "cache", "notification")
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "passphrase",
    "password",
    "secret",
    "token",
    "verifier",
    "salt",
    "fernet_key",
    "derived_key",
)
_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(passphrase|password|secret|token)\b\s*([:=])\s*([^\s,;]+)"
)
# Fernet tokens start with version byte 0x80, which is "gAAAAA" in urlsafe base64.
_FERNET_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bgAAAAA[A-Za-z0-9_=-]{20,}")
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.makeLogRecord({}))
) | {"message", "asctime", "taskName", "correlation"}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "lists_store_correlation", default=()
)
_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    session_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = "lists_store"
    level: int | str = "INFO"
    log_to_stderr: bool = False
    redactor: LogRedactor | None = None


@dataclass(slots=True)
class StructuredLoggingHandle:
    """Active logging setup; ``shutdown`` drains the queue and restores the logger."""

    logger: logging.Logger
    session_id: str
    log_path: Path
    _queue_handler: logging.Handler = field(repr=False)
    _listener: logging.handlers.QueueListener = field(repr=False)
    _sinks: tuple[logging.Handler, ...] = field(repr=False)
    _previous: tuple[int, bool] = field(repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    is_shutdown: bool = False

    def shutdown(self) -> None:
        with self._lock:
            if self.is_shutdown:
                return
            self.is_shutdown = True
        self._listener.stop()
        self.logger.removeHandler(self._queue_handler)
        for handler in (self._queue_handler, *self._sinks):
            handler.close()
        self.logger.setLevel(self._previous[0])
        self.logger.propagate = self._previous[1]


class _CorrelationFilter(logging.Filter):
    """Stamp the emitting thread's correlation fields before the record is queued."""

    def filter(self, record: logging.LogRecord) -> bool:
        bound = _correlation.get()
        if bound:
            record.correlation = dict(bound)
        return True


class _EventFormatter(logging.Formatter):
    def __init__(self, session_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._session_id = session_id
        self._redact = redactor

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redact(record.getMessage())),
            "session_id": self._session_id,
        }
        event.update(getattr(record, "correlation", {}))
        extras = {
            key: _to_json(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        for key in _CORRELATION_KEYS:
            value = extras.pop(key, None)
            if isinstance(value, str) and value.strip():
                event[key] = value.strip()
        if extras:
            event["fields"] = self._redact(extras)
        if record.exc_info is not None:
            event["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str | None = None,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Configure logging from a validated ``[observability]`` config section."""

    cfg = dict(observability_config or {})
    level = cfg.get("log_level", "INFO")
    base_log_dir = log_dir if log_dir is not None else cfg.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            session_id=session_id or new_session_id(),
            base_log_dir=base_log_dir if isinstance(base_log_dir, (Path, str)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=bool(cfg.get("log_to_stderr", False)),
            redactor=None if cfg.get("redact_secrets", True) else _keep,
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Route ``config.logger_name`` through a queue into the session's JSON-lines file.

    Replaces any handle set up earlier; raises ``ValueError`` for a blank session
    id or an unknown level.
    """

    global _active

    session_id = config.session_id.strip() if isinstance(config.session_id, str) else ""
    if not session_id or Path(session_id).name != session_id:
        raise ValueError(f"invalid session_id {config.session_id!r}")
    level = _parse_level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir).expanduser() / session_id / LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _EventFormatter(session_id, config.redactor or default_log_redactor)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setFormatter(formatter)

    records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
    queue_handler = logging.handlers.QueueHandler(records)
    queue_handler.addFilter(_CorrelationFilter())
    listener = logging.handlers.QueueListener(records, *sinks)

    logger = logging.getLogger(config.logger_name)
    previous = (logger.level, logger.propagate)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(level)
    logger.propagate = False
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        _queue_handler=queue_handler,
        _listener=listener,
        _sinks=tuple(sinks),
        _previous=previous,
    )
    with _active_lock:
        _active = handle
    return handle


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    """Shut down ``handle``, or the active handle when omitted."""

    global _active

    with _active_lock:
        target = handle if handle is not None else _active
        if target is _active:
            _active = None
    if target is not None:
        target.shutdown()


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for records logged in this scope; ``None`` unbinds."""

    bound = dict(_correlation.get())
    for key, value in fields.items():
        if value is None:
            bound.pop(key, None)
        elif isinstance(value, str) and value.strip():
            bound[key] = value.strip()
        else:
            raise ValueError(f"correlation field {key!r} must be a non-empty string")
    token = _correlation.set(tuple(bound.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def default_log_redactor(value: JSONValue, _key: str | None = None) -> JSONValue:
    """Redact values under sensitive keys, secret assignments and Fernet tokens."""

    if _key is not None and any(term in _key.lower() for term in _SENSITIVE_KEY_TERMS):
        return REDACTED
    if isinstance(value, str):
        masked = _ASSIGNMENT_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        return _FERNET_TOKEN_PATTERN.sub(REDACTED, masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {key: default_log_redactor(item, key) for key, item in value.items()}
    return value


def _keep(value: JSONValue) -> JSONValue:
    return value


def _parse_level(value: int | str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    parsed = logging.getLevelName(str(value).strip().upper())
    if not isinstance(parsed, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return parsed


def _as_text(value: JSONValue) -> str:
    return value if isinstance(value, str) else json.dumps(value, sort_keys=True)


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, bytes):
        # Salts, verifiers and ciphertext.
        return REDACTED
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return repr(value)


atexit.register(shutdown_logging)


__all__ = [
    "LOG_FILENAME",
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "new_session_id",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
