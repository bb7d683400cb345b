"""Thread-safe counters and timings for cache saves, flushes and store opens."""

from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MetricLabels = tuple[tuple[str, str], ...]

_METRIC_NAME_MAX_LEN: Final[int] = 128
_LABEL_VALUE_MAX_LEN: Final[int] = 256


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _TimingState:
    count: int = 0
    total: float = 0.0
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """In-memory metrics shared by a coordinator, its caches and its store handles."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._created_at = datetime.now(tz=UTC)
        self._counters: dict[_MetricKey, float] = {}
        self._timings: dict[_MetricKey, _TimingState] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Increment a counter by ``amount`` (>= 0)."""

        delta = _as_finite_float(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def observe(
        self,
        name: str,
        seconds: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        sample = _as_finite_float(seconds, path="seconds")
        with self._lock:
            state = self._timings.setdefault(key, _TimingState())
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_timing(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._timings.get(key)
            return None if state is None else state.as_dict()

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._created_at = datetime.now(tz=UTC)

    def snapshot(self) -> dict[str, JSONValue]:
        """Return a snapshot with stable key ordering."""

        with self._lock:
            created_at = self._created_at
            counters = tuple(sorted(self._counters.items()))
            timings = tuple(sorted(self._timings.items()))

        return {
            "created_at": created_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "counters": {_metric_identifier(key): value for key, value in counters},
            "timings": {_metric_identifier(key): state.as_dict() for key, state in timings},
        }

    def to_json(self, *, indent: int | None = None) -> str:
        payload = self.snapshot()
        if indent is None:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    return _MetricKey(name=_validate_metric_name(name), labels=_normalize_labels(labels))


def _metric_identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    labels = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{labels}}}"


def _validate_metric_name(name: str) -> str:
    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    normalized = name.strip()
    if not normalized:
        raise ValueError("metric name must not be empty")
    if len(normalized) > _METRIC_NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_METRIC_NAME_MAX_LEN} characters")
    return normalized


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if not labels:
        return ()

    out: list[tuple[str, str]] = []
    for key, value in labels.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("label key must be a non-empty string")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"label value for {key!r} must be a non-empty string")
        if len(value) > _LABEL_VALUE_MAX_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_LABEL_VALUE_MAX_LEN} characters")
        out.append((key.strip(), value.strip()))

    out.sort(key=lambda item: item[0])
    return tuple(out)


def _as_finite_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = ["MetricsRegistry"]
