"""Persistence layer: managed model, encrypted store handles and object caches."""

from lists_store.persistence.cache import (
    CacheConfigurationError,
    CacheConflictError,
    CacheError,
    CacheSaveError,
    DuplicateRecordError,
    ObjectCache,
    Record,
    RecordNotFoundError,
)
from lists_store.persistence.crypto import (
    CallbackPassphrase,
    EnvironmentPassphrase,
    PassphraseError,
    PassphraseProvider,
    StaticPassphrase,
)
from lists_store.persistence.model import (
    EntityDescription,
    ManagedModel,
    MappingInferenceError,
    ModelError,
    ModelLoadError,
    ModelNotFoundError,
    RecordValidationError,
    UnknownEntityError,
    infer_mapping,
    load_model,
)
from lists_store.persistence.store import (
    EncryptedStore,
    PendingChange,
    StoreBusyError,
    StoreClosedError,
    StoreConflictError,
    StoreCorruptionError,
    StoreError,
    StoreMigrationError,
    StoreOptions,
    StorePassphraseError,
    make_store,
    store_location,
)

__all__ = [
    "CacheConfigurationError",
    "CacheConflictError",
    "CacheError",
    "CacheSaveError",
    "CallbackPassphrase",
    "DuplicateRecordError",
    "EncryptedStore",
    "EntityDescription",
    "EnvironmentPassphrase",
    "ManagedModel",
    "MappingInferenceError",
    "ModelError",
    "ModelLoadError",
    "ModelNotFoundError",
    "ObjectCache",
    "PassphraseError",
    "PassphraseProvider",
    "PendingChange",
    "Record",
    "RecordNotFoundError",
    "RecordValidationError",
    "StaticPassphrase",
    "StoreBusyError",
    "StoreClosedError",
    "StoreConflictError",
    "StoreCorruptionError",
    "StoreError",
    "StoreMigrationError",
    "StoreOptions",
    "StorePassphraseError",
    "UnknownEntityError",
    "infer_mapping",
    "load_model",
    "make_store",
    "store_location",
]
