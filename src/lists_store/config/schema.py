"""
lists-store — configuration schema and validation.

Purpose
- Define the built-in defaults of ``lists_store.toml`` and strict validation rules.

What this file covers
- Sections ``[meta]``, ``[store]``, ``[lifecycle]`` and ``[observability]``.
- Structured validation issues (field path + message) collected in one pass.
- Rejection of embedded secrets: the store passphrase is never written to config,
  only the name of the environment variable holding it (``store.passphrase_env``).
- Deterministic deep-merge helpers and redacted dumps.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from lists_store.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DOCUMENTS_DIR,
    DEFAULT_FLUSH_TIMEOUT_SECONDS,
    DEFAULT_MODEL_NAME,
    DEFAULT_PASSPHRASE_ENV,
    KDF_ITERATIONS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_MODEL_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_SIGNAL_NAME_PATTERN = re.compile(r"^SIG[A-Z0-9]+$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "passphrase",
        "key",
        "salt",
        "credential",
        "credentials",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "passphrase",
    "password",
    "secret",
    "encryption_key",
    "private_key",
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("store", "documents_dir"),
    ("store", "resources_dir"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class StoreSection(TypedDict):
    model_name: str
    documents_dir: str
    resources_dir: NotRequired[str]
    passphrase_env: str
    infer_mapping_automatically: bool
    migrate_automatically: bool
    busy_timeout_ms: int
    busy_retry_limit: int
    busy_retry_backoff_ms: int
    kdf_iterations: int


class LifecycleSection(TypedDict):
    flush_timeout_seconds: float
    install_process_hooks: bool
    terminate_signals: list[str]
    background_signals: list[str]


class ObservabilitySection(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stderr: bool
    redact_secrets: bool


class ListsStoreConfig(TypedDict):
    meta: MetaConfig
    store: StoreSection
    lifecycle: LifecycleSection
    observability: ObservabilitySection


DEFAULT_CONFIG: Final[ListsStoreConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "store": {
        "model_name": DEFAULT_MODEL_NAME,
        "documents_dir": DEFAULT_DOCUMENTS_DIR,
        "passphrase_env": DEFAULT_PASSPHRASE_ENV,
        "infer_mapping_automatically": True,
        "migrate_automatically": True,
        "busy_timeout_ms": 5_000,
        "busy_retry_limit": 4,
        "busy_retry_backoff_ms": 25,
        "kdf_iterations": KDF_ITERATIONS,
    },
    "lifecycle": {
        "flush_timeout_seconds": DEFAULT_FLUSH_TIMEOUT_SECONDS,
        "install_process_hooks": True,
        "terminate_signals": ["SIGTERM"],
        "background_signals": [],
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stderr": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> ListsStoreConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade lists_store.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the lists-store package"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy suitable for logs and ``lists-store config`` output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, Callable[[dict[str, object], str], dict[str, Any]]] = {
        "meta": lambda section, path: _validate_meta(section, path, issues),
        "store": lambda section, path: _validate_store(section, path, issues),
        "lifecycle": lambda section, path: _validate_lifecycle(section, path, issues),
        "observability": lambda section, path: _validate_observability(section, path, issues),
    }
    _reject_unknown_keys(payload, set(sections), "", issues)
    _require_keys(payload, set(sections), "", issues)

    out: dict[str, Any] = {}
    for key in sorted(sections):
        raw = payload.get(key)
        if raw is None:
            continue
        section_obj = _as_object(raw, key, issues)
        if section_obj is None:
            continue
        out[key] = sections[key](section_obj, key)
    return out


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_store(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    required = {
        "model_name",
        "documents_dir",
        "passphrase_env",
        "infer_mapping_automatically",
        "migrate_automatically",
        "busy_timeout_ms",
        "busy_retry_limit",
        "busy_retry_backoff_ms",
        "kdf_iterations",
    }
    _reject_unknown_keys(payload, required | {"resources_dir"}, path, issues)
    _require_keys(payload, required, path, issues)

    out: dict[str, Any] = {}
    if "model_name" in payload:
        name = _as_str(payload["model_name"], _join(path, "model_name"), issues)
        if name is not None:
            if _MODEL_NAME_PATTERN.fullmatch(name):
                out["model_name"] = name
            else:
                issues.add(
                    _join(path, "model_name"),
                    "must start with a letter and contain only letters, digits and underscores",
                )

    for key in ("documents_dir", "resources_dir"):
        if key in payload:
            parsed_path = _as_path_text(payload[key], _join(path, key), issues)
            if parsed_path is not None:
                out[key] = parsed_path

    if "passphrase_env" in payload:
        env_name = _as_env_name(payload["passphrase_env"], _join(path, "passphrase_env"), issues)
        if env_name is not None:
            out["passphrase_env"] = env_name

    for key in ("infer_mapping_automatically", "migrate_automatically"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag

    for key, minimum in (
        ("busy_timeout_ms", 0),
        ("busy_retry_limit", 0),
        ("busy_retry_backoff_ms", 0),
        ("kdf_iterations", 1),
    ):
        if key in payload:
            number = _as_int(payload[key], _join(path, key), issues, minimum=minimum)
            if number is not None:
                out[key] = number

    return out


def _validate_lifecycle(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {
        "flush_timeout_seconds",
        "install_process_hooks",
        "terminate_signals",
        "background_signals",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "flush_timeout_seconds" in payload:
        timeout = _as_float(
            payload["flush_timeout_seconds"], _join(path, "flush_timeout_seconds"), issues
        )
        if timeout is not None:
            if timeout <= 0:
                issues.add(_join(path, "flush_timeout_seconds"), "must be > 0")
            else:
                out["flush_timeout_seconds"] = timeout

    if "install_process_hooks" in payload:
        flag = _as_bool(payload["install_process_hooks"], _join(path, "install_process_hooks"), issues)
        if flag is not None:
            out["install_process_hooks"] = flag

    for key in ("terminate_signals", "background_signals"):
        if key in payload:
            names = _as_signal_names(payload[key], _join(path, key), issues)
            if names is not None:
                out[key] = names

    terminate = set(out.get("terminate_signals", ()))
    background = set(out.get("background_signals", ()))
    for name in sorted(terminate & background):
        issues.add(_join(path, "background_signals"), f"{name} is already a terminate signal")
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stderr", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if level is not None:
            out["log_level"] = level

    if "log_dir" in payload:
        log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None:
            out["log_dir"] = log_dir

    for key in ("log_to_stderr", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: LISTS_STORE_PASSPHRASE)")
        return None
    return parsed


def _as_signal_names(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected list of signal names, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        name = _as_str(item, item_path, issues)
        if name is None:
            continue
        normalized = name.upper() if name.upper().startswith("SIG") else f"SIG{name.upper()}"
        if not _SIGNAL_NAME_PATTERN.fullmatch(normalized):
            issues.add(item_path, f"invalid signal name {name!r}")
            continue
        if normalized not in out:
            out.append(normalized)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    parsed = parsed.upper()
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            # Flags such as ``redact_secrets`` carry no secret material.
            if _looks_sensitive_key(key) and not isinstance(value[key], bool):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ListsStoreConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
