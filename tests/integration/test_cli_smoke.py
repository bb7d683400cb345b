"""
lists-store — CLI subprocess smoke contracts

Purpose
- Exercise `python -m lists_store` end to end: init/add/stats/check/backup/config.
- Verify exit codes, JSON output, and the encrypted store file left on disk.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
PASSPHRASE = "correct horse battery staple"


def _run_cli(
    workdir: Path, *args: str, passphrase: str | None = PASSPHRASE
) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    src_pythonpath = str(SRC_PATH)
    env["PYTHONPATH"] = (
        src_pythonpath if not existing_pythonpath else f"{src_pythonpath}:{existing_pythonpath}"
    )
    for name in list(env):
        if name.startswith("LISTS_"):
            del env[name]
    if passphrase is not None:
        env["LISTS_STORE_PASSPHRASE"] = passphrase
    env["LISTS_STORE_KDF_ITERATIONS"] = "1000"
    env["LISTS_OBSERVABILITY_LOG_DIR"] = str(workdir / "logs")
    return subprocess.run(
        [sys.executable, "-m", "lists_store", *args],
        cwd=workdir,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def _json_output(completed: subprocess.CompletedProcess[str]) -> dict[str, object]:
    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout.strip().splitlines()[-1])
    assert isinstance(payload, dict)
    return payload


def test_cli_add_stats_check_backup_roundtrip(tmp_path: Path) -> None:
    docs = tmp_path / "docs"

    init = _json_output(_run_cli(tmp_path, "init", "--documents-dir", str(docs), "--json"))
    assert init["path"] == str(docs.resolve() / "Lists.sqlite")
    assert init["model"] == "Lists"
    assert init["model_versions_recorded"] == 1

    added = _json_output(
        _run_cli(
            tmp_path,
            "add",
            "Groceries",
            "--item",
            "milk",
            "--item",
            "eggs",
            "--documents-dir",
            str(docs),
            "--json",
        )
    )
    assert added["flushed"] is True
    assert added["items"] == 2
    assert added["foreground_saved"] == 3
    assert added["background_saved"] == 3

    stats = _json_output(_run_cli(tmp_path, "stats", "--documents-dir", str(docs), "--json"))
    assert stats["counts"] == {"Item": 2, "List": 1}
    assert stats["layout_version"] == 1

    check = _run_cli(tmp_path, "check", "--documents-dir", str(docs))
    assert check.returncode == 0, check.stderr
    assert "OK integrity check passed" in check.stdout

    backup_path = tmp_path / "backup" / "Lists.sqlite"
    backup = _run_cli(tmp_path, "backup", str(backup_path), "--documents-dir", str(docs))
    assert backup.returncode == 0, backup.stderr
    restored = _json_output(
        _run_cli(tmp_path, "stats", "--documents-dir", str(backup_path.parent), "--json")
    )
    assert restored["counts"] == {"Item": 2, "List": 1}

    raw = (docs / "Lists.sqlite").read_bytes()
    assert b"Groceries" not in raw
    assert b"milk" not in raw
    log_files = list((tmp_path / "logs").glob("*/lists_store.jsonl"))
    assert log_files
    assert all(PASSPHRASE not in path.read_text(encoding="utf-8") for path in log_files)


def test_cli_config_output_is_redacted(tmp_path: Path) -> None:
    (tmp_path / "lists_store.toml").write_text(
        '[store]\nmodel_name = "Lists"\nbusy_timeout_ms = 750\n', encoding="utf-8"
    )

    completed = _run_cli(tmp_path, "config", "--json")

    payload = _json_output(completed)
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["store"]["busy_timeout_ms"] == 750
    assert config["store"]["kdf_iterations"] == 1000
    assert config["store"]["passphrase_env"] == "LISTS_STORE_PASSPHRASE"
    assert PASSPHRASE not in completed.stdout


def test_cli_wrong_or_missing_passphrase_exits_with_store_error(tmp_path: Path) -> None:
    docs = tmp_path / "docs"
    assert _run_cli(tmp_path, "init", "--documents-dir", str(docs)).returncode == 0

    wrong = _run_cli(tmp_path, "stats", "--documents-dir", str(docs), passphrase="nope")
    missing = _run_cli(tmp_path, "stats", "--documents-dir", str(docs), passphrase=None)

    assert wrong.returncode == 3
    assert "StorePassphraseError" in wrong.stderr
    assert missing.returncode == 3
    assert "LISTS_STORE_PASSPHRASE" in missing.stderr


def test_cli_corrupt_store_file_exits_with_store_error(tmp_path: Path) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "Lists.sqlite").write_bytes(b"not a database at all, just bytes")

    completed = _run_cli(tmp_path, "stats", "--documents-dir", str(docs))

    assert completed.returncode == 3
    assert "StoreCorruptionError" in completed.stderr


def test_cli_invalid_config_exits_with_config_error(tmp_path: Path) -> None:
    bad_model = _run_cli(tmp_path, "stats", "--model", "not a name")
    missing_file = _run_cli(tmp_path, "config", "--config", str(tmp_path / "absent.toml"))
    unknown_command = _run_cli(tmp_path, "explode")

    assert bad_model.returncode == 2
    assert "store.model_name" in bad_model.stderr
    assert missing_file.returncode == 2
    assert "config file not found" in missing_file.stderr
    assert unknown_command.returncode == 2
