"""Command-line interface router for lists-store."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from lists_store.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    redact_config,
)
from lists_store.coordinator import PersistenceCoordinator, StoreConfig
from lists_store.lifecycle import (
    NotificationCenter,
    install_process_hooks,
    signal_from_name,
)
from lists_store.observability import setup_logging, shutdown_logging


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="lists-store",
        description=(
            "lists-store — encrypted local store for lists and their items.\n\n"
            "Common workflows:\n"
            "  lists-store init            Create or unlock the store\n"
            "  lists-store add Groceries   Add a list through the foreground cache\n"
            "  lists-store stats           Show record counts and model history\n"
            "  lists-store check           Run the SQLite integrity check\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ./lists_store.toml if present).",
    )
    common.add_argument(
        "--documents-dir",
        default=None,
        help="Directory holding the store file (overrides store.documents_dir).",
    )
    common.add_argument(
        "--model",
        dest="model_name",
        default=None,
        help="Data model name (overrides store.model_name).",
    )
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", parents=[common], help="Create the store, or unlock and migrate an existing one"
    )
    init_parser.set_defaults(handler=_cmd_init)

    add_parser = subparsers.add_parser(
        "add",
        parents=[common],
        help="Add a list with optional items and flush it to disk",
        description=(
            "Insert a list through the foreground cache, then flush\n"
            "foreground -> background -> disk.\n\n"
            "Examples:\n"
            "  lists-store add Groceries --item milk --item eggs\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_parser.add_argument("name", help="List name")
    add_parser.add_argument(
        "--item", dest="items", action="append", default=[], help="Item name (repeatable)"
    )
    add_parser.set_defaults(handler=_cmd_add)

    stats_parser = subparsers.add_parser(
        "stats", parents=[common], help="Show record counts, layout version and model history"
    )
    stats_parser.set_defaults(handler=_cmd_stats)

    check_parser = subparsers.add_parser(
        "check", parents=[common], help="Run the SQLite integrity check on the store"
    )
    check_parser.set_defaults(handler=_cmd_check)

    backup_parser = subparsers.add_parser(
        "backup", parents=[common], help="Copy the encrypted store to a file"
    )
    backup_parser.add_argument("destination", help="Backup file path")
    backup_parser.set_defaults(handler=_cmd_backup)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
        description=(
            "Display the effective config after merging defaults, file, env, and flags.\n"
            "Sensitive values are redacted.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _coordinator(config) as coordinator:
        history = coordinator.primary_store.model_history()
        payload: dict[str, object] = {
            "command": "init",
            "path": str(coordinator.store_location),
            "model": coordinator.model.name,
            "model_version": coordinator.model.version,
            "model_versions_recorded": len(history),
        }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0
    print(f"store ready: {payload['path']}")
    print(f"model: {payload['model']} v{payload['model_version']}")
    return 0


def _cmd_add(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    name = str(args.name).strip()
    if not name:
        raise CLIError("list name must not be empty", exit_code=2)
    items = [item.strip() for item in args.items if item.strip()]

    with _coordinator(config) as coordinator:
        cache = coordinator.foreground_cache

        def insert() -> str:
            now = datetime.now(tz=UTC)
            list_id = cache.insert("List", name=name, created_at=now).record_id
            item_ids = [
                cache.insert("Item", name=item_name, created_at=now, list=list_id).record_id
                for item_name in items
            ]
            if item_ids:
                cache.update("List", list_id, items=item_ids)
            return list_id

        list_id = cache.perform_and_wait(insert)
        report = coordinator.flush()

    payload: dict[str, object] = {
        "command": "add",
        "list_id": list_id,
        "items": len(items),
        "flushed": report.ok,
        "foreground_saved": report.foreground.saved_changes,
        "background_saved": report.background.saved_changes,
    }
    if _flag(args, "json"):
        _emit_json(payload)
    else:
        print(f"added list {name!r} ({list_id}) with {len(items)} item(s)")
    if not report.ok:
        failed = report.background if not report.background.ok else report.foreground
        raise CLIError(
            f"flush failed in {failed.cache} cache: {failed.error_type}: {failed.error_message}",
            exit_code=3,
        )
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _coordinator(config) as coordinator:
        store = coordinator.primary_store
        counts = {name: store.count(name) for name in coordinator.model.entity_names}
        history = [
            {
                "model_version": item.model_version,
                "checksum": item.checksum,
                "removed_entities": list(item.removed_entities),
                "changed_entities": list(item.changed_entities),
                "applied_at": item.applied_at,
            }
            for item in store.model_history()
        ]
        payload: dict[str, object] = {
            "command": "stats",
            "path": str(coordinator.store_location),
            "layout_version": store.schema_version(),
            "counts": counts,
            "model_history": history,
        }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0
    print(f"store: {payload['path']} (layout v{payload['layout_version']})")
    for entity, count in sorted(counts.items()):
        print(f"  {entity}: {count}")
    for item in history:
        print(f"  model v{item['model_version']} applied {item['applied_at']}")
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _coordinator(config) as coordinator:
        errors = coordinator.primary_store.integrity_check()
    payload: dict[str, object] = {
        "command": "check",
        "ok": not errors,
        "errors": list(errors),
    }
    if _flag(args, "json"):
        _emit_json(payload)
    elif errors:
        for error in errors:
            print(f"FAIL {error}")
    else:
        print("OK integrity check passed")
    return 0 if not errors else 1


def _cmd_backup(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    destination = Path(str(args.destination)).expanduser().resolve()
    with _coordinator(config) as coordinator:
        written = coordinator.primary_store.backup(destination)
    if _flag(args, "json"):
        _emit_json({"command": "backup", "destination": str(written)})
    else:
        print(f"backup written: {written}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redact_config(config)})
        return 0
    print(dump_effective_config(config, indent=2))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _coordinator(config: Mapping[str, object]) -> Iterator[PersistenceCoordinator]:
    observability = config.get("observability")
    lifecycle = config.get("lifecycle")
    assert isinstance(observability, Mapping) and isinstance(lifecycle, Mapping)

    handle = setup_logging(observability)
    center = NotificationCenter()
    hooks = None
    try:
        coordinator = PersistenceCoordinator(
            StoreConfig.from_settings(config), notification_center=center
        )
        if lifecycle.get("install_process_hooks"):
            hooks = install_process_hooks(
                center,
                terminate_signals=[signal_from_name(name) for name in lifecycle["terminate_signals"]],
                background_signals=[
                    signal_from_name(name) for name in lifecycle["background_signals"]
                ],
                register_atexit=False,
            )
        try:
            setup = coordinator.open()
            if not setup.ok:
                raise CLIError(
                    f"unable to open store at {coordinator.store_location}: "
                    f"{setup.error_type}: {setup.error}",
                    exit_code=3,
                )
            yield coordinator
        finally:
            coordinator.close()
    finally:
        if hooks is not None:
            hooks.uninstall()
        shutdown_logging(handle)


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    overrides: dict[str, object] = {}
    documents_dir = _optional_str(getattr(args, "documents_dir", None))
    if documents_dir is not None:
        overrides["store.documents_dir"] = str(Path(documents_dir).expanduser().resolve())
    model_name = _optional_str(getattr(args, "model_name", None))
    if model_name is not None:
        overrides["store.model_name"] = model_name

    try:
        loaded = load_config(config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    return dict(loaded)


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


__all__ = ["CLIError", "build_parser", "run_cli"]
