"""
lists-store — encrypted on-disk store.

Purpose
- Open (or create) the encrypted SQLite store file backing the object caches.
- Apply versioned store layout migrations and automatic lightweight model migrations.
- Persist pending cache changes atomically.

Store file layout
- ``schema_versions``: applied layout migrations (version, name, checksum, applied_at).
- ``store_metadata``: salt, key-derivation parameters, passphrase verifier, stored model.
- ``model_versions``: history of model checksums the store was migrated to.
- ``records``: one row per record; the payload is Fernet-encrypted canonical JSON.

Failure policy
- Open failures raise a ``StoreError`` subclass. There is no retry and no fallback store.
- Busy errors are retried with bounded exponential backoff.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Literal

from lists_store.constants import KDF_ITERATIONS, STORE_FILE_SUFFIX, STORE_LAYOUT_VERSION
from lists_store.persistence.crypto import (
    PassphraseProvider,
    PayloadCipher,
    PayloadDecryptionError,
    new_salt,
)
from lists_store.persistence.model import (
    ManagedModel,
    MappingInferenceError,
    ModelLoadError,
    infer_mapping,
)

if TYPE_CHECKING:
    from lists_store.observability.metrics import MetricsRegistry

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
ChangeKind = Literal["insert", "update", "delete"]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SQLITE_HEADER: Final[bytes] = b"SQLite format 3\x00"

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_LAYOUT_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    """
    CREATE TABLE IF NOT EXISTS store_metadata (
        key TEXT PRIMARY KEY,
        value BLOB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_versions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        model_version INTEGER NOT NULL CHECK (model_version > 0),
        checksum TEXT NOT NULL CHECK (length(checksum) = 64),
        removed_entities_json TEXT NOT NULL,
        changed_entities_json TEXT NOT NULL,
        applied_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS records (
        entity TEXT NOT NULL,
        record_id TEXT NOT NULL,
        payload BLOB NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (entity, record_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_entity_created ON records(entity, created_at)",
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Base class for encrypted store errors."""


class StoreBusyError(StoreError):
    """Raised when bounded busy retries are exhausted."""


class StoreMigrationError(StoreError):
    """Raised when the store layout or model cannot be migrated."""


class StoreCorruptionError(StoreError):
    """Raised when the store file is empty, foreign, or reported corrupt by SQLite."""


class StorePassphraseError(StoreError):
    """Raised when the passphrase does not unlock the store."""


class StoreClosedError(StoreError):
    """Raised when a closed store is used."""


class StoreConflictError(StoreError):
    """Raised when a pending change targets a record that no longer exists."""


@dataclass(frozen=True, slots=True)
class StoreOptions:
    """Open options of an encrypted store."""

    infer_mapping_automatically: bool = True
    migrate_automatically: bool = True
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT
    busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS
    kdf_iterations: int = KDF_ITERATIONS

    def __post_init__(self) -> None:
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if self.busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if self.busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")
        if self.kdf_iterations <= 0:
            raise ValueError("kdf_iterations must be > 0")


@dataclass(frozen=True, slots=True)
class PendingChange:
    """One staged mutation handed from a cache to its store."""

    kind: ChangeKind
    entity: str
    record_id: str
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class ModelVersionRecord:
    model_version: int
    checksum: str
    removed_entities: tuple[str, ...]
    changed_entities: tuple[str, ...]
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_store_layout",
        statements=_LAYOUT_0001_STATEMENTS,
        checksum=_migration_checksum(1, "initial_store_layout", _LAYOUT_0001_STATEMENTS),
    ),
)


def store_location(documents_dir: str | Path, model_name: str) -> Path:
    """Return ``<documents_dir>/<model_name>.sqlite``."""

    name = model_name.strip()
    if not name or Path(name).name != name:
        raise ValueError(f"invalid model name for a store file: {model_name!r}")
    return Path(documents_dir).expanduser() / f"{name}{STORE_FILE_SUFFIX}"


def make_store(
    model: ManagedModel,
    location: str | Path,
    passphrase_provider: PassphraseProvider,
    options: StoreOptions | None = None,
    *,
    label: str = "primary",
    metrics: MetricsRegistry | None = None,
) -> EncryptedStore:
    """Open (or create) the encrypted store at ``location`` and return the open handle."""

    store = EncryptedStore(
        model,
        location,
        passphrase_provider,
        options,
        label=label,
        metrics=metrics,
    )
    store.open()
    return store


class EncryptedStore:
    """Store access handle binding a model, a file location, and an encryption key."""

    def __init__(
        self,
        model: ManagedModel,
        path: str | Path,
        passphrase_provider: PassphraseProvider,
        options: StoreOptions | None = None,
        *,
        label: str = "primary",
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._model = model
        self._path = Path(path).expanduser()
        self._passphrase_provider = passphrase_provider
        self._options = options or StoreOptions()
        self._label = label
        self._metrics = metrics
        self._cipher: PayloadCipher | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def model(self) -> ManagedModel:
        return self._model

    @property
    def options(self) -> StoreOptions:
        return self._options

    @property
    def label(self) -> str:
        return self._label

    @property
    def is_open(self) -> bool:
        return self._cipher is not None

    def open(self) -> None:
        """Open the store, creating and migrating it as needed. Idempotent."""

        if self._cipher is not None:
            return

        cipher = None if self._path.exists() else self._create()
        created = cipher is not None
        if cipher is None:
            self._check_existing_file()
            cipher = self._attach()

        self._cipher = cipher
        if self._metrics is not None:
            self._metrics.inc("store_opens", labels={"store": self._label})
        logger.info(
            "opened encrypted store",
            extra={"store": self._label, "path": str(self._path), "new_file": created},
        )

    def close(self) -> None:
        """Forget the derived key; connections are short-lived so nothing else is held."""

        if self._cipher is None:
            return
        self._cipher = None
        logger.debug("closed encrypted store", extra={"store": self._label})

    def __enter__(self) -> EncryptedStore:
        self.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()

    def load(self, entity: str, record_id: str) -> dict[str, Any] | None:
        """Return the materialized values of one record, or ``None``."""

        cipher = self._require_cipher()
        description = self._model.entity(entity)
        with self._connection() as conn:
            row = self._execute_with_retry(
                conn,
                "SELECT payload FROM records WHERE entity = ? AND record_id = ?",
                (entity, record_id),
                operation="load record",
            ).fetchone()
        if row is None:
            return None
        return description.materialize(self._decrypt(cipher, row["payload"], entity, record_id))

    def load_all(self, entity: str) -> dict[str, dict[str, Any]]:
        """Return ``record_id -> values`` for every stored record of ``entity``, oldest first."""

        cipher = self._require_cipher()
        description = self._model.entity(entity)
        with self._connection() as conn:
            rows = self._execute_with_retry(
                conn,
                """
                SELECT record_id, payload FROM records
                WHERE entity = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (entity,),
                operation="load records",
            ).fetchall()
        out: dict[str, dict[str, Any]] = {}
        for row in rows:
            record_id = row["record_id"]
            stored = self._decrypt(cipher, row["payload"], entity, record_id)
            out[record_id] = description.materialize(stored)
        return out

    def count(self, entity: str) -> int:
        self._require_cipher()
        self._model.entity(entity)
        with self._connection() as conn:
            row = self._execute_with_retry(
                conn,
                "SELECT COUNT(*) AS total FROM records WHERE entity = ?",
                (entity,),
                operation="count records",
            ).fetchone()
        return 0 if row is None else int(row["total"])

    def apply_changes(self, changes: Sequence[PendingChange]) -> int:
        """Apply ``changes`` in one immediate transaction and return how many were written."""

        cipher = self._require_cipher()
        if not changes:
            return 0
        now = _utc_now_iso()
        with self._connection() as conn, self._transaction(conn) as tx:
            for change in changes:
                self._apply_one(tx, cipher, change, now)
        logger.debug(
            "applied pending changes", extra={"store": self._label, "changes": len(changes)}
        )
        return len(changes)

    def schema_version(self) -> int:
        with self._connection() as conn:
            row = self._execute_with_retry(
                conn,
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
                (),
                operation="read schema version",
            ).fetchone()
        return 0 if row is None else int(row["version"])

    def model_history(self) -> list[ModelVersionRecord]:

        with self._connection() as conn:
            rows = self._execute_with_retry(
                conn,
                """
                SELECT model_version, checksum, removed_entities_json,
                       changed_entities_json, applied_at
                FROM model_versions
                ORDER BY id ASC
                """,
                (),
                operation="load model history",
            ).fetchall()
        return [
            ModelVersionRecord(
                model_version=int(row["model_version"]),
                checksum=str(row["checksum"]),
                removed_entities=tuple(json.loads(row["removed_entities_json"])),
                changed_entities=tuple(json.loads(row["changed_entities_json"])),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        ]

    def backup(self, destination: str | Path) -> Path:
        """Copy the store (still encrypted) to ``destination`` using the SQLite backup API."""

        self._require_cipher()
        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        with (
            self._connection() as source,
            closing(
                sqlite3.connect(
                    destination_path,
                    timeout=self._options.busy_timeout_ms / 1000.0,
                    isolation_level=None,
                )
            ) as target,
        ):
            source.backup(target)
            target.execute("PRAGMA journal_mode=WAL")
        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self._connection() as conn:
            rows = self._execute_with_retry(
                conn, f"PRAGMA integrity_check({max_errors})", (), operation="integrity check"
            ).fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def _check_existing_file(self) -> None:
        if not self._path.is_file():
            raise StoreCorruptionError(f"{self._path} exists but is not a regular file")
        try:
            with self._path.open("rb") as handle:
                header = handle.read(len(_SQLITE_HEADER))
        except OSError as exc:
            raise StoreError(f"unable to read store file {self._path}: {exc}") from exc
        if not header:
            raise StoreCorruptionError(f"{self._path} is empty")
        if header != _SQLITE_HEADER:
            raise StoreCorruptionError(f"{self._path} is not a SQLite database")

    def _create(self) -> PayloadCipher | None:
        """Build a fresh store beside the target and link it into place.

        Returns ``None`` when another handle linked its store first; the caller
        then attaches to that file instead.
        """

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_name(f".{self._path.name}.{uuid.uuid4().hex}.creating")
        try:
            with self._connection(staging) as conn:
                self._migrate_layout(conn)
                with self._transaction(conn) as tx:
                    cipher = self._initialize(tx)
                self._execute_with_retry(
                    conn, "PRAGMA wal_checkpoint(TRUNCATE)", (), operation="checkpoint"
                )
            try:
                os.link(staging, self._path)
            except FileExistsError:
                logger.debug(
                    "store created concurrently by another handle",
                    extra={"store": self._label, "path": str(self._path)},
                )
                return None
            except OSError as exc:
                raise StoreError(f"unable to create store file {self._path}: {exc}") from exc
        finally:
            for suffix in ("", "-wal", "-shm"):
                Path(f"{staging}{suffix}").unlink(missing_ok=True)

        logger.info(
            "created encrypted store",
            extra={"store": self._label, "path": str(self._path), "model": self._model.name},
        )
        return cipher

    def _attach(self) -> PayloadCipher:
        with self._connection() as conn:
            if not self._has_table(conn, "store_metadata"):
                raise StoreCorruptionError(
                    f"{self._path} is not an encrypted store (store metadata missing)"
                )
            self._migrate_layout(conn)
            with self._transaction(conn) as tx:
                metadata = self._load_metadata(tx)
                if not metadata:
                    detail = "holds records but" if self._has_records(tx) else "has"
                    raise StoreCorruptionError(f"{self._path} {detail} no store metadata")
                cipher = self._unlock(metadata)
                self._reconcile_model(tx, cipher, metadata)
        return cipher

    def _initialize(self, tx: sqlite3.Connection) -> PayloadCipher:
        salt = new_salt()
        iterations = self._options.kdf_iterations
        cipher = PayloadCipher.from_passphrase(
            self._passphrase_provider, salt, iterations=iterations
        )
        metadata: dict[str, SQLValue] = {
            "salt": salt,
            "kdf_iterations": str(iterations),
            "verifier": cipher.make_verifier(),
            "layout_version": str(STORE_LAYOUT_VERSION),
            "model_json": self._model.to_json(),
            "model_checksum": self._model.checksum,
            "created_at": _utc_now_iso(),
        }
        for key in sorted(metadata):
            self._execute_with_retry(
                tx,
                "INSERT INTO store_metadata (key, value) VALUES (?, ?)",
                (key, metadata[key]),
                operation="write store metadata",
            )
        self._record_model_version(tx, removed=(), changed=())
        return cipher

    def _unlock(self, metadata: dict[str, SQLValue]) -> PayloadCipher:
        salt = metadata.get("salt")
        verifier = metadata.get("verifier")
        iterations_raw = metadata.get("kdf_iterations")
        if not isinstance(salt, bytes) or not isinstance(verifier, bytes):
            raise StoreCorruptionError(f"{self._path} has malformed encryption metadata")
        try:
            iterations = int(str(iterations_raw))
        except ValueError as exc:
            raise StoreCorruptionError(f"{self._path} has malformed kdf parameters") from exc

        cipher = PayloadCipher.from_passphrase(
            self._passphrase_provider, salt, iterations=iterations
        )
        if not cipher.check_verifier(verifier):
            raise StorePassphraseError(f"passphrase does not unlock {self._path}")
        return cipher

    def _reconcile_model(
        self,
        tx: sqlite3.Connection,
        cipher: PayloadCipher,
        metadata: dict[str, SQLValue],
    ) -> None:
        stored_checksum = metadata.get("model_checksum")
        if stored_checksum == self._model.checksum:
            return

        stored_json = metadata.get("model_json")
        if not isinstance(stored_json, str):
            raise StoreCorruptionError(f"{self._path} has no stored model description")
        try:
            stored_model = ManagedModel.from_json(self._model.name, stored_json)
        except ModelLoadError as exc:
            raise StoreCorruptionError(f"{self._path} has an unreadable stored model") from exc

        if stored_model.version > self._model.version:
            raise StoreMigrationError(
                "store model is newer than the application model "
                f"(store={stored_model.version}, model={self._model.version})"
            )
        if not self._options.migrate_automatically:
            raise StoreMigrationError(
                f"{self._path} uses a different model version and automatic migration is disabled"
            )
        if not self._options.infer_mapping_automatically:
            raise StoreMigrationError(
                f"{self._path} needs a mapping model and mapping inference is disabled"
            )
        try:
            plan = infer_mapping(stored_model, self._model)
        except MappingInferenceError as exc:
            raise StoreMigrationError(f"unable to migrate {self._path}: {exc}") from exc

        for entity in plan.removed_entities:
            self._execute_with_retry(
                tx,
                "DELETE FROM records WHERE entity = ?",
                (entity,),
                operation="drop removed entity",
            )
        for entity in plan.changed_entities:
            self._rewrite_entity(tx, cipher, entity)

        for key, value in (
            ("model_json", self._model.to_json()),
            ("model_checksum", self._model.checksum),
        ):
            self._execute_with_retry(
                tx,
                "UPDATE store_metadata SET value = ? WHERE key = ?",
                (value, key),
                operation="update stored model",
            )
        self._record_model_version(
            tx, removed=plan.removed_entities, changed=plan.changed_entities
        )
        if self._metrics is not None:
            self._metrics.inc("store_migrations", labels={"store": self._label})
        logger.info(
            "migrated store model",
            extra={
                "store": self._label,
                "from_version": stored_model.version,
                "to_version": self._model.version,
                "removed_entities": list(plan.removed_entities),
                "changed_entities": list(plan.changed_entities),
            },
        )

    def _rewrite_entity(self, tx: sqlite3.Connection, cipher: PayloadCipher, entity: str) -> None:
        description = self._model.entity(entity)
        rows = self._execute_with_retry(
            tx,
            "SELECT record_id, payload FROM records WHERE entity = ?",
            (entity,),
            operation="load records for migration",
        ).fetchall()
        for row in rows:
            values = description.materialize(
                self._decrypt(cipher, row["payload"], entity, row["record_id"])
            )
            self._execute_with_retry(
                tx,
                "UPDATE records SET payload = ? WHERE entity = ? AND record_id = ?",
                (cipher.encrypt_payload(values), entity, row["record_id"]),
                operation="rewrite record for migration",
            )

    def _record_model_version(
        self,
        tx: sqlite3.Connection,
        *,
        removed: Sequence[str],
        changed: Sequence[str],
    ) -> None:

        self._execute_with_retry(
            tx,
            """
            INSERT INTO model_versions (
                model_version, checksum, removed_entities_json, changed_entities_json, applied_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (
                self._model.version,
                self._model.checksum,
                json.dumps(list(removed)),
                json.dumps(list(changed)),
                _utc_now_iso(),
            ),
            operation="record model version",
        )

    def _apply_one(
        self,
        tx: sqlite3.Connection,
        cipher: PayloadCipher,
        change: PendingChange,
        now: str,
    ) -> None:
        description = self._model.entity(change.entity)
        if change.kind == "insert":
            values = description.materialize(change.values)
            try:
                self._execute_with_retry(
                    tx,
                    """
                    INSERT INTO records (entity, record_id, payload, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (change.entity, change.record_id, cipher.encrypt_payload(values), now, now),
                    operation="insert record",
                )
            except sqlite3.IntegrityError as exc:
                raise StoreConflictError(
                    f"{change.entity} record {change.record_id} already exists"
                ) from exc
            return

        if change.kind == "update":
            row = self._execute_with_retry(
                tx,
                "SELECT payload FROM records WHERE entity = ? AND record_id = ?",
                (change.entity, change.record_id),
                operation="load record for update",
            ).fetchone()
            if row is None:
                raise StoreConflictError(
                    f"{change.entity} record {change.record_id} no longer exists"
                )
            values = description.materialize(
                self._decrypt(cipher, row["payload"], change.entity, change.record_id)
            )
            values.update(change.values)
            self._execute_with_retry(
                tx,
                """
                UPDATE records SET payload = ?, updated_at = ?
                WHERE entity = ? AND record_id = ?
                """,
                (cipher.encrypt_payload(values), now, change.entity, change.record_id),
                operation="update record",
            )
            return

        if change.kind == "delete":
            self._execute_with_retry(
                tx,
                "DELETE FROM records WHERE entity = ? AND record_id = ?",
                (change.entity, change.record_id),
                operation="delete record",
            )
            return

        raise StoreError(f"unsupported change kind: {change.kind!r}")

    def _decrypt(
        self, cipher: PayloadCipher, payload: bytes, entity: str, record_id: str
    ) -> dict[str, Any]:
        try:
            return cipher.decrypt_payload(payload)
        except PayloadDecryptionError as exc:
            raise StoreCorruptionError(
                f"{entity} record {record_id} in {self._path} cannot be decrypted"
            ) from exc

    def _require_cipher(self) -> PayloadCipher:
        if self._cipher is None:
            raise StoreClosedError(f"store {self._label} at {self._path} is not open")
        return self._cipher

    @contextmanager
    def _connection(self, path: Path | None = None) -> Iterator[sqlite3.Connection]:
        target = self._path if path is None else path
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                target,
                timeout=self._options.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="connect")
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except BaseException:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        self._execute_with_retry(
            conn,
            f"PRAGMA busy_timeout={self._options.busy_timeout_ms}",
            (),
            operation="configure busy timeout",
        )
        journal_row = self._execute_with_retry(
            conn, "PRAGMA journal_mode=WAL", (), operation="configure journal mode"
        ).fetchone()
        if journal_row is None:
            raise StoreError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StoreError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _has_table(self, conn: sqlite3.Connection, name: str) -> bool:
        row = self._execute_with_retry(
            conn,
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
            operation="inspect store tables",
        ).fetchone()
        return row is not None

    def _has_records(self, conn: sqlite3.Connection) -> bool:
        row = self._execute_with_retry(
            conn, "SELECT 1 FROM records LIMIT 1", (), operation="inspect records"
        ).fetchone()
        return row is not None

    def _migrate_layout(self, conn: sqlite3.Connection) -> None:
        self._execute_with_retry(
            conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
        )
        applied = self._load_applied_migrations(conn)
        current_version = max(applied, default=0)
        if current_version > STORE_LAYOUT_VERSION:
            raise StoreMigrationError(
                "store layout is newer than supported by this library "
                f"(store={current_version}, code={STORE_LAYOUT_VERSION})"
            )

        for migration in _MIGRATIONS:
            if migration.version > STORE_LAYOUT_VERSION:
                continue
            record = applied.get(migration.version)
            if record is not None:
                if record.checksum != migration.checksum:
                    raise StoreMigrationError(
                        "layout migration checksum mismatch for version "
                        f"{migration.version}: store={record.checksum} code={migration.checksum}"
                    )
                continue

            with self._transaction(conn) as tx:
                for statement in migration.statements:
                    self._execute_with_retry(
                        tx, statement, (), operation=f"apply layout migration {migration.version}"
                    )
                self._execute_with_retry(
                    tx,
                    """
                    INSERT INTO schema_versions (version, name, checksum, applied_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                    operation=f"record layout migration {migration.version}",
                )

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int) or not isinstance(row["checksum"], str):
                raise StoreMigrationError("schema_versions rows are malformed")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=row["checksum"],
                applied_at=str(row["applied_at"]),
            )
        return out

    def _load_metadata(self, conn: sqlite3.Connection) -> dict[str, SQLValue]:
        rows = self._execute_with_retry(
            conn, "SELECT key, value FROM store_metadata", (), operation="load store metadata"
        ).fetchall()
        return {str(row["key"]): row["value"] for row in rows}

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._options.busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._options.busy_retry_limit:
                    backoff = self._options.busy_retry_backoff_ms / 1000.0
                    time.sleep(backoff * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StoreBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise StoreCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `EncryptedStore.integrity_check()` and restore from a backup if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StoreBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._options.busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StoreError(f"{operation} failed for {self._path}: {exc}") from exc

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"EncryptedStore(label={self._label!r}, path={str(self._path)!r}, {state})"


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "EncryptedStore",
    "MigrationRecord",
    "ModelVersionRecord",
    "PendingChange",
    "StoreBusyError",
    "StoreClosedError",
    "StoreConflictError",
    "StoreCorruptionError",
    "StoreError",
    "StoreMigrationError",
    "StoreOptions",
    "StorePassphraseError",
    "make_store",
    "store_location",
]
