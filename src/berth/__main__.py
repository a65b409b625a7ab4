"""berth CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sqlite3
import sys
from pathlib import Path

from berth.config import DEFAULT_CONFIG_PATH, BerthConfig, load_config
from berth.log_levels import ALLOWED_LOG_LEVELS, configure_logging

logger = logging.getLogger("berth")


# ── Default template for `berth init` ────────────────────────────────────────

_DEFAULT_CONFIG = """\
# berth sandbox container configuration

state_dir: .berth/state
log_level: info

sandbox:
  mode: all
  scope: per-session
  workspace_access: rw
  workspace_root: "{workspace_root}"
  docker:
    image: berth-sandbox:latest
    container_prefix: berth-sbx-
    workdir: /workspace
    read_only_root: true
    tmpfs: [/tmp, /var/tmp, /run]
    network: none
    cap_drop: [ALL]
    env:
      LANG: C.UTF-8
    # env_file: .berth/sandbox.env
  prune:
    max_age_hours: 168
    idle_hours: 24
    max_containers: 0
    interval_seconds: 300
"""


def _init_project(root: Path) -> None:
    config_path = root / DEFAULT_CONFIG_PATH
    if config_path.exists():
        print(f"Config already exists: {config_path}", file=sys.stderr)
        sys.exit(1)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    workspace_root = (root / ".berth" / "sandboxes").resolve()
    config_path.write_text(_DEFAULT_CONFIG.format(workspace_root=workspace_root))
    print(f"Wrote {config_path}")


# ── Commands ─────────────────────────────────────────────────────────────────


def _build_services(config: BerthConfig):
    from berth.pruning import ContainerPruner
    from berth.registry import ContainerRegistry
    from berth.sandbox.manager import ContainerReconciler
    from berth.sandbox.runtime import DockerDriver

    docker = config.sandbox.docker
    driver = DockerDriver(binary=docker.binary, timeout=docker.command_timeout)
    registry = ContainerRegistry(config.registry_path)
    reconciler = ContainerReconciler(driver, registry)
    return registry, reconciler, ContainerPruner(reconciler)


async def _run_command(args, config: BerthConfig) -> int:
    from berth.sandbox.manager import resolve_session_workspace_dir

    registry, reconciler, pruner = _build_services(config)
    cfg = config.sandbox
    try:
        if args.command == "ensure":
            workspace = args.workspace or resolve_session_workspace_dir(cfg, args.session)
            agent_workspace = args.agent_workspace or workspace
            name = await reconciler.ensure_sandbox_container(
                args.session, workspace, agent_workspace, cfg
            )
            print(name)
            return 0

        if args.command == "list":
            for status in await reconciler.list_sandbox_containers():
                entry = status.entry
                state = "running" if status.running else "stopped"
                print(
                    f"{entry.name}\t{state}\t{entry.scope.value}\t"
                    f"{entry.session_key}\t{entry.created_at.isoformat()}"
                )
            return 0

        if args.command == "prune":
            report = await pruner.prune(cfg.prune)
            for entry in report.removed:
                print(f"removed {entry.name}")
            for name, reason in report.failures.items():
                print(f"failed  {name}: {reason}", file=sys.stderr)
            return 1 if report.failures else 0

        if args.command == "remove":
            removed = await reconciler.remove_sandbox_container(args.name)
            return 0 if removed else 1
    finally:
        await registry.close()
    return 1


def main():
    parser = argparse.ArgumentParser(
        prog="berth",
        description="berth — sandbox containers for agent tool execution",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to config.yaml (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        choices=ALLOWED_LOG_LEVELS,
        help="Logging level (default: from config, else info)",
    )

    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Write a default .berth/config.yaml")
    init_parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Project root (default: current directory)",
    )

    ensure_parser = subparsers.add_parser(
        "ensure", help="Ensure a running sandbox container for a session"
    )
    ensure_parser.add_argument("--session", required=True, help="Session key")
    ensure_parser.add_argument(
        "--workspace",
        type=Path,
        help="Host workspace directory (default: <workspace_root>/<session slug>)",
    )
    ensure_parser.add_argument(
        "--agent-workspace",
        type=Path,
        help="Agent workspace directory mounted at /agent (default: same as --workspace)",
    )

    subparsers.add_parser("list", help="List managed sandbox containers")
    subparsers.add_parser("prune", help="Remove containers violating the prune policy")

    remove_parser = subparsers.add_parser("remove", help="Stop and remove a sandbox container")
    remove_parser.add_argument("name", help="Container name")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.root)
        return

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'berth init' to create one, or pass --config", file=sys.stderr)
        sys.exit(1)

    configure_logging(args.log_level or config.log_level)

    from berth.sandbox.errors import SandboxError

    try:
        sys.exit(asyncio.run(_run_command(args, config)))
    except SandboxError as e:
        logger.error("%s", e)
        sys.exit(2)
    except sqlite3.OperationalError as e:
        logger.error("Container registry %s unavailable: %s", config.registry_path, e)
        sys.exit(2)


if __name__ == "__main__":
    main()
