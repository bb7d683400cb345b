"""Passphrase providers, key derivation, and payload encryption tests."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from lists_store.persistence.crypto import (
    CallbackPassphrase,
    EnvironmentPassphrase,
    PassphraseError,
    PayloadCipher,
    PayloadDecryptionError,
    StaticPassphrase,
    derive_key,
    new_salt,
)

from . import TEST_KDF_ITERATIONS, TEST_PASSPHRASE, WRONG_PASSPHRASE

_JSON_SCALAR = st.none() | st.booleans() | st.integers(-(2**53), 2**53) | st.text(max_size=20)
_PAYLOAD = st.dictionaries(st.text(min_size=1, max_size=12), _JSON_SCALAR, max_size=6)


def _cipher(passphrase: str, salt: bytes) -> PayloadCipher:
    return PayloadCipher.from_passphrase(
        StaticPassphrase(passphrase), salt, iterations=TEST_KDF_ITERATIONS
    )


def test_environment_passphrase_reads_named_variable() -> None:
    provider = EnvironmentPassphrase("LISTS_TEST_KEY", environ={"LISTS_TEST_KEY": "s3cret"})

    assert provider.passphrase() == "s3cret"
    assert "s3cret" not in repr(provider)


def test_environment_passphrase_missing_or_blank_raises() -> None:
    with pytest.raises(PassphraseError, match="LISTS_TEST_KEY"):
        EnvironmentPassphrase("LISTS_TEST_KEY", environ={}).passphrase()
    with pytest.raises(PassphraseError):
        EnvironmentPassphrase("LISTS_TEST_KEY", environ={"LISTS_TEST_KEY": "  "}).passphrase()


def test_callback_passphrase_wraps_failures() -> None:
    def broken() -> str:
        raise OSError("keychain locked")

    assert CallbackPassphrase(lambda: "from-keychain").passphrase() == "from-keychain"
    with pytest.raises(PassphraseError, match="keychain locked"):
        CallbackPassphrase(broken).passphrase()
    with pytest.raises(PassphraseError, match="empty"):
        CallbackPassphrase(lambda: "").passphrase()


def test_static_passphrase_is_not_in_repr() -> None:
    assert TEST_PASSPHRASE not in repr(StaticPassphrase(TEST_PASSPHRASE))
    with pytest.raises(PassphraseError):
        StaticPassphrase("").passphrase()


def test_derive_key_is_deterministic_per_salt() -> None:
    salt = new_salt()

    first = derive_key(TEST_PASSPHRASE, salt, iterations=TEST_KDF_ITERATIONS)
    second = derive_key(TEST_PASSPHRASE, salt, iterations=TEST_KDF_ITERATIONS)
    other_salt = derive_key(TEST_PASSPHRASE, new_salt(), iterations=TEST_KDF_ITERATIONS)

    assert first == second
    assert first != other_salt
    with pytest.raises(ValueError):
        derive_key(TEST_PASSPHRASE, salt, iterations=0)


def test_verifier_only_accepts_matching_passphrase() -> None:
    salt = new_salt()
    verifier = _cipher(TEST_PASSPHRASE, salt).make_verifier()

    assert _cipher(TEST_PASSPHRASE, salt).check_verifier(verifier) is True
    assert _cipher(WRONG_PASSPHRASE, salt).check_verifier(verifier) is False
    assert _cipher(TEST_PASSPHRASE, salt).check_verifier(b"garbage") is False


def test_payload_encryption_hides_plaintext_and_detects_tampering() -> None:
    salt = new_salt()
    cipher = _cipher(TEST_PASSPHRASE, salt)

    token = cipher.encrypt_payload({"name": "Groceries"})

    assert b"Groceries" not in token
    with pytest.raises(PayloadDecryptionError):
        _cipher(WRONG_PASSPHRASE, salt).decrypt_payload(token)
    with pytest.raises(PayloadDecryptionError):
        cipher.decrypt_payload(token[:-4] + b"AAAA")


_PROPERTY_SALT = new_salt()
_PROPERTY_CIPHER = _cipher(TEST_PASSPHRASE, _PROPERTY_SALT)


@given(payload=_PAYLOAD)
@settings(max_examples=25, derandomize=True, deadline=None)
def test_property_payload_decrypts_to_original(payload: dict[str, object]) -> None:
    assert _PROPERTY_CIPHER.decrypt_payload(_PROPERTY_CIPHER.encrypt_payload(payload)) == payload
