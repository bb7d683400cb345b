"""Stable constants shared across the persistence stack."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STORE_LAYOUT_VERSION: Final[int] = 1

# File naming conventions.
STORE_FILE_SUFFIX: Final[str] = ".sqlite"
MODEL_FILE_SUFFIX: Final[str] = ".model.toml"
MODEL_YAML_SUFFIX: Final[str] = ".model.yaml"
DEFAULT_MODEL_NAME: Final[str] = "Lists"
DEFAULT_DOCUMENTS_DIR: Final[str] = "~/Documents"
DEFAULT_PASSPHRASE_ENV: Final[str] = "LISTS_STORE_PASSPHRASE"

# Key derivation for payload encryption.
KDF_ITERATIONS: Final[int] = 390_000
KDF_SALT_BYTES: Final[int] = 16

# Lifecycle notification names.
APP_WILL_TERMINATE: Final[str] = "app-will-terminate"
APP_DID_ENTER_BACKGROUND: Final[str] = "app-did-enter-background"

# Cache names, also used as queue names and metric labels.
FOREGROUND_CACHE: Final[str] = "foreground"
BACKGROUND_CACHE: Final[str] = "background"
IMPORT_CACHE: Final[str] = "import"

DEFAULT_FLUSH_TIMEOUT_SECONDS: Final[float] = 5.0

__all__ = [
    "APP_DID_ENTER_BACKGROUND",
    "APP_WILL_TERMINATE",
    "BACKGROUND_CACHE",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_DOCUMENTS_DIR",
    "DEFAULT_FLUSH_TIMEOUT_SECONDS",
    "DEFAULT_MODEL_NAME",
    "DEFAULT_PASSPHRASE_ENV",
    "FOREGROUND_CACHE",
    "IMPORT_CACHE",
    "KDF_ITERATIONS",
    "KDF_SALT_BYTES",
    "MODEL_FILE_SUFFIX",
    "MODEL_YAML_SUFFIX",
    "STORE_FILE_SUFFIX",
    "STORE_LAYOUT_VERSION",
]
