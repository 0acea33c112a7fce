"""CLI entry point for the workspace engine.

Usage:
    devspace versions save ./my-app -d "before refactor"
    devspace versions list
    devspace versions diff <id1> <id2>
    devspace versions restore <id> ./my-app
    devspace check command "rm -rf /"
    devspace policy
    devspace preview ./my-app --type react
    devspace reap
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from .config import WorkspaceConfig
from .errors import WorkspaceError


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.config:
        from .yaml_config import load_yaml_config

        loaded = load_yaml_config(args.config)
        config, rules = loaded.workspace, loaded.policy
    else:
        from devspace.shared.services.policy_guard import PolicyRuleSet

        config, rules = WorkspaceConfig.from_env(), PolicyRuleSet()
    if args.versions_dir:
        config.versions_dir = args.versions_dir

    try:
        if args.command == "versions":
            return _run_versions(args, config)
        if args.command == "check":
            return _run_check(args, rules)
        if args.command == "policy":
            from devspace.shared.services.policy_guard import PolicyGuard

            _emit(PolicyGuard(rules).report())
            return 0
        if args.command == "preview":
            return asyncio.run(_run_preview(args, config, rules))
        if args.command == "reap":
            from devspace.shared.services.process_cleanup import (
                cleanup_stale_preview_processes,
            )

            print(f"Reaped {cleanup_stale_preview_processes()} stale preview processes")
            return 0
    except WorkspaceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130

    parser.print_help()
    return 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devspace",
        description="Preview servers, project versions and action policy checks",
    )
    parser.add_argument("--config", "-c", default=None, help="YAML config file")
    parser.add_argument(
        "--versions-dir", default=None,
        help="Version store directory (default: from config)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command")

    versions = sub.add_parser("versions", help="Manage project versions")
    vsub = versions.add_subparsers(dest="versions_command", required=True)
    vsub.add_parser("list", help="List versions, newest first")
    vsub.add_parser("stats", help="Aggregate version statistics")
    save = vsub.add_parser("save", help="Snapshot a project directory")
    save.add_argument("project")
    save.add_argument("--description", "-d", default="")
    show = vsub.add_parser("show", help="Show a version's metadata and files")
    show.add_argument("version_id")
    restore = vsub.add_parser("restore", help="Replace a directory with a version")
    restore.add_argument("version_id")
    restore.add_argument("target")
    diff = vsub.add_parser("diff", help="Compare the file sets of two versions")
    diff.add_argument("version_id_1")
    diff.add_argument("version_id_2")
    export = vsub.add_parser("export", help="Write a version to a zip archive")
    export.add_argument("version_id")
    export.add_argument("export_dir")
    delete = vsub.add_parser("delete", help="Delete a version")
    delete.add_argument("version_id")

    check = sub.add_parser("check", help="Evaluate a policy check")
    check.add_argument("kind", choices=["command", "path", "url"])
    check.add_argument("value")
    check.add_argument("--root", default=".", help="Project root for path checks")

    preview = sub.add_parser("preview", help="Run a preview server until interrupted")
    preview.add_argument("project")
    preview.add_argument("--type", dest="project_type", default="nextjs")

    sub.add_parser("policy", help="Show the active policy rules and limits")
    sub.add_parser("reap", help="Kill orphaned preview dev servers")
    return parser


def _emit(value: Any) -> None:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = dataclasses.asdict(value)
    elif isinstance(value, list):
        value = [
            dataclasses.asdict(v) if dataclasses.is_dataclass(v) else v for v in value
        ]
    print(json.dumps(value, indent=2, default=str))


def _run_versions(args: argparse.Namespace, config: WorkspaceConfig) -> int:
    from devspace.shared.services.version_store import VersionStore

    store = VersionStore(config.versions_dir, config.max_versions)
    cmd = args.versions_command
    if cmd == "list":
        _emit(store.get_versions())
    elif cmd == "stats":
        _emit(store.get_version_stats())
    elif cmd == "save":
        _emit(store.save_version(args.project, args.description))
    elif cmd == "show":
        _emit(store.get_version(args.version_id))
    elif cmd == "restore":
        _emit(store.restore_version(args.version_id, args.target))
    elif cmd == "diff":
        _emit(store.compare_versions(args.version_id_1, args.version_id_2))
    elif cmd == "export":
        _emit(store.export_version(args.version_id, args.export_dir))
    elif cmd == "delete":
        _emit({"deleted": store.delete_version(args.version_id)})
    return 0


def _run_check(args: argparse.Namespace, rules: Any) -> int:
    from devspace.shared.services.policy_guard import PolicyGuard

    guard = PolicyGuard(rules)
    if args.kind == "command":
        allowed, reason = guard.check_command(args.value)
    elif args.kind == "path":
        allowed, reason = guard.check_file_path(args.value, args.root)
    else:
        allowed, reason = guard.check_url(args.value)
    print("allowed" if allowed else f"blocked: {reason}")
    return 0 if allowed else 1


async def _run_preview(args: argparse.Namespace, config: WorkspaceConfig, rules: Any) -> int:
    from devspace.shared.services.process_cleanup import cleanup_stale_preview_processes

    from .engine import WorkspaceEngine

    cleanup_stale_preview_processes()
    async with WorkspaceEngine(config, rules) as engine:
        info = await engine.previews.start_preview("cli", args.project, args.project_type)
        print(f"Preview running at {info.url} (Ctrl-C to stop)")
        try:
            while engine.previews.get_preview_status("cli").status == "running":
                await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            pass
        status = engine.previews.get_preview_status("cli")
        if status.found and status.status != "running":
            print(f"Preview exited ({status.status})")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
