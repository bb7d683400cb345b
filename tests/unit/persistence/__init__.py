"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from lists_store.coordinator import StoreConfig
from lists_store.persistence.crypto import StaticPassphrase
from lists_store.persistence.model import ManagedModel, load_model
from lists_store.persistence.store import EncryptedStore, StoreOptions, make_store, store_location

TEST_PASSPHRASE: Final[str] = "correct horse battery staple"
WRONG_PASSPHRASE: Final[str] = "tr0ub4dor&3"
# Real deployments use hundreds of thousands of iterations; tests only need the code path.
TEST_KDF_ITERATIONS: Final[int] = 1_000

BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)

LISTS_V2_MODEL: Final[str] = """
version = 2

[entities.List.attributes]
name = { type = "string", optional = false }
created_at = { type = "date", optional = false }
archived = { type = "boolean", optional = false, default = false }
color = "string"

[entities.List.relationships]
items = { destination = "Item", to_many = true, inverse = "list" }

[entities.Item.attributes]
name = { type = "string", optional = false }
done = { type = "boolean", optional = false, default = false }
created_at = { type = "date" }

[entities.Item.relationships]
list = { destination = "List", inverse = "items" }
"""

LISTS_BREAKING_MODEL: Final[str] = """
version = 2

[entities.List.attributes]
name = { type = "integer", optional = false }
created_at = { type = "date", optional = false }

[entities.List.relationships]
items = { destination = "Item", to_many = true, inverse = "list" }

[entities.Item.attributes]
name = { type = "string", optional = false }

[entities.Item.relationships]
list = { destination = "List", inverse = "items" }
"""


def fast_options(**overrides: object) -> StoreOptions:
    values: dict[str, object] = {
        "kdf_iterations": TEST_KDF_ITERATIONS,
        "busy_timeout_ms": 2_000,
        "busy_retry_limit": 2,
        "busy_retry_backoff_ms": 5,
    }
    values.update(overrides)
    return StoreOptions(**values)  # type: ignore[arg-type]


def lists_model() -> ManagedModel:
    return load_model("Lists")


def write_model(resources_dir: Path, name: str, text: str) -> Path:
    resources_dir.mkdir(parents=True, exist_ok=True)
    path = resources_dir / f"{name}.model.toml"
    path.write_text(text.strip() + "\n", encoding="utf-8")
    return path


def open_store(
    documents_dir: Path,
    *,
    model: ManagedModel | None = None,
    passphrase: str = TEST_PASSPHRASE,
    options: StoreOptions | None = None,
    label: str = "primary",
) -> EncryptedStore:
    resolved_model = model if model is not None else lists_model()
    return make_store(
        resolved_model,
        store_location(documents_dir, resolved_model.name),
        StaticPassphrase(passphrase),
        options if options is not None else fast_options(),
        label=label,
    )


def make_config(
    documents_dir: Path,
    *,
    model_name: str = "Lists",
    resources_dir: Path | None = None,
    passphrase: str = TEST_PASSPHRASE,
    flush_timeout_seconds: float = 5.0,
    **option_overrides: object,
) -> StoreConfig:
    return StoreConfig(
        model_name=model_name,
        documents_dir=documents_dir,
        resources_dir=resources_dir,
        passphrase_provider=StaticPassphrase(passphrase),
        options=fast_options(**option_overrides),
        flush_timeout_seconds=flush_timeout_seconds,
    )


def list_values(name: str = "Groceries", **overrides: object) -> dict[str, object]:
    values: dict[str, object] = {"name": name, "created_at": BASE_TS}
    values.update(overrides)
    return values


__all__ = [
    "BASE_TS",
    "LISTS_BREAKING_MODEL",
    "LISTS_V2_MODEL",
    "TEST_KDF_ITERATIONS",
    "TEST_PASSPHRASE",
    "WRONG_PASSPHRASE",
    "fast_options",
    "list_values",
    "lists_model",
    "make_config",
    "open_store",
    "write_model",
]
