"""Passphrase providers and payload encryption for the encrypted store."""

from __future__ import annotations

import base64
import json
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from lists_store.constants import DEFAULT_PASSPHRASE_ENV, KDF_ITERATIONS, KDF_SALT_BYTES

_VERIFIER_PLAINTEXT: Final[bytes] = b"lists-store:verifier:v1"
_KEY_LENGTH_BYTES: Final[int] = 32


class PassphraseError(RuntimeError):
    """Raised when a passphrase provider cannot supply a passphrase."""


class PayloadDecryptionError(RuntimeError):
    """Raised when an encrypted payload cannot be decrypted with the active key."""


@runtime_checkable
class PassphraseProvider(Protocol):
    """Capability that supplies the store passphrase on demand."""

    def passphrase(self) -> str: ...


@dataclass(frozen=True, slots=True)
class StaticPassphrase:
    """Passphrase held in memory; intended for tests and embedding applications."""

    value: str = field(repr=False)

    def passphrase(self) -> str:
        if not self.value:
            raise PassphraseError("static passphrase must not be empty")
        return self.value


@dataclass(frozen=True, slots=True)
class EnvironmentPassphrase:
    """Passphrase read from an environment variable at open time."""

    env_name: str = DEFAULT_PASSPHRASE_ENV
    environ: Mapping[str, str] | None = field(default=None, repr=False, compare=False)

    def passphrase(self) -> str:
        source = os.environ if self.environ is None else self.environ
        value = source.get(self.env_name, "")
        if not value.strip():
            raise PassphraseError(
                f"store passphrase environment variable {self.env_name} is not set"
            )
        return value


@dataclass(frozen=True, slots=True)
class CallbackPassphrase:
    """Passphrase obtained from a callable, e.g. a platform keychain lookup."""

    callback: Callable[[], str] = field(repr=False)

    def passphrase(self) -> str:
        try:
            value = self.callback()
        except Exception as exc:
            raise PassphraseError(f"passphrase callback failed: {exc}") from exc
        if not isinstance(value, str) or not value:
            raise PassphraseError("passphrase callback returned an empty value")
        return value


def new_salt() -> bytes:
    return os.urandom(KDF_SALT_BYTES)


def derive_key(passphrase: str, salt: bytes, *, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a Fernet key from ``passphrase`` with PBKDF2-HMAC-SHA256."""

    if not passphrase:
        raise PassphraseError("passphrase must not be empty")
    if iterations <= 0:
        raise ValueError("iterations must be > 0")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class PayloadCipher:
    """Encrypts record payloads (canonical JSON) with a derived Fernet key."""

    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    @classmethod
    def from_passphrase(
        cls,
        provider: PassphraseProvider,
        salt: bytes,
        *,
        iterations: int = KDF_ITERATIONS,
    ) -> PayloadCipher:
        return cls(derive_key(provider.passphrase(), salt, iterations=iterations))

    def make_verifier(self) -> bytes:
        return self._fernet.encrypt(_VERIFIER_PLAINTEXT)

    def check_verifier(self, token: bytes) -> bool:
        try:
            return self._fernet.decrypt(token) == _VERIFIER_PLAINTEXT
        except InvalidToken:
            return False

    def encrypt_payload(self, values: Mapping[str, object]) -> bytes:
        text = json.dumps(values, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return self._fernet.encrypt(text.encode("utf-8"))

    def decrypt_payload(self, token: bytes) -> dict[str, Any]:
        try:
            raw = self._fernet.decrypt(token)
        except InvalidToken as exc:
            raise PayloadDecryptionError("payload failed authentication") from exc
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise PayloadDecryptionError("payload is not a JSON object")
        return payload


__all__ = [
    "CallbackPassphrase",
    "EnvironmentPassphrase",
    "PassphraseError",
    "PassphraseProvider",
    "PayloadCipher",
    "PayloadDecryptionError",
    "StaticPassphrase",
    "derive_key",
    "new_salt",
]
