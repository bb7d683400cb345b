"""Config schema validation, merging, migration guidance, and redaction tests."""

from __future__ import annotations

import pytest

from lists_store.config.schema import (
    DEFAULT_CONFIG,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issue_paths(payload: object) -> list[str]:
    return [issue.path for issue in validate_config(payload).issues]


def test_defaults_are_valid_and_copied() -> None:
    config = default_config()
    config["store"]["model_name"] = "Changed"

    assert validate_config(default_config()).is_valid
    assert DEFAULT_CONFIG["store"]["model_name"] == "Lists"


def test_unknown_and_missing_fields_are_reported() -> None:
    config = default_config()
    config["store"]["color"] = "blue"  # type: ignore[typeddict-unknown-key]
    del config["observability"]["log_dir"]  # type: ignore[misc]

    assert _issue_paths(config) == ["observability.log_dir", "store.color"]


@pytest.mark.parametrize(
    ("section", "key", "value", "path"),
    [
        ("store", "model_name", "2Lists", "store.model_name"),
        ("store", "passphrase_env", "lower-case", "store.passphrase_env"),
        ("store", "kdf_iterations", 0, "store.kdf_iterations"),
        ("store", "busy_retry_limit", -1, "store.busy_retry_limit"),
        ("store", "migrate_automatically", "yes", "store.migrate_automatically"),
        ("lifecycle", "flush_timeout_seconds", 0, "lifecycle.flush_timeout_seconds"),
        ("lifecycle", "flush_timeout_seconds", float("inf"), "lifecycle.flush_timeout_seconds"),
        ("lifecycle", "terminate_signals", "SIGTERM", "lifecycle.terminate_signals"),
        ("lifecycle", "terminate_signals", ["SIG-TERM"], "lifecycle.terminate_signals[0]"),
        ("observability", "log_level", "TRACE", "observability.log_level"),
    ],
)
def test_invalid_values_are_reported_at_their_path(
    section: str, key: str, value: object, path: str
) -> None:
    config = default_config()
    config[section][key] = value  # type: ignore[literal-required]

    result = validate_config(config)

    assert result.config is None
    assert [issue.path for issue in result.issues] == [path]


def test_signal_names_are_normalized_and_deduplicated() -> None:
    config = default_config()
    config["lifecycle"]["terminate_signals"] = ["term", "SIGTERM", "sigint"]

    validated = assert_valid_config(config)

    assert validated["lifecycle"]["terminate_signals"] == ["SIGTERM", "SIGINT"]


def test_overlapping_signal_sets_are_rejected() -> None:
    config = default_config()
    config["lifecycle"]["background_signals"] = ["TERM"]

    result = validate_config(config)

    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("lifecycle.background_signals", "SIGTERM is already a terminate signal")
    ]


def test_schema_version_mismatch_carries_guidance() -> None:
    config = default_config()
    config["meta"]["schema_version"] = 2

    result = validate_config(config)

    assert result.issues[0].path == "meta.schema_version"
    assert "upgrade the lists-store package" in result.issues[0].message
    assert "older" in migration_guidance(0)
    assert migration_guidance(1) == "schema version is current"


def test_non_mapping_root_is_rejected() -> None:
    assert _issue_paths(["not", "a", "table"]) == ["<root>"]


def test_merge_config_is_deep_and_non_mutating() -> None:
    base = default_config()

    merged = merge_config(base, {"store": {"kdf_iterations": 10}})

    assert merged["store"]["kdf_iterations"] == 10
    assert merged["store"]["model_name"] == "Lists"
    assert base["store"]["kdf_iterations"] != 10


def test_redaction_keeps_env_names_and_flags() -> None:
    payload = {
        "store": {"passphrase_env": "LISTS_STORE_PASSPHRASE", "passphrase": "hunter2"},
        "observability": {"redact_secrets": True},
    }

    redacted = redact_config(payload)

    assert redacted["store"] == {
        "passphrase": "<redacted>",
        "passphrase_env": "LISTS_STORE_PASSPHRASE",
    }
    assert redacted["observability"] == {"redact_secrets": True}
    assert redact_config("not a mapping") == {}
