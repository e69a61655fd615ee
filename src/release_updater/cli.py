"""Command line entry point for the release updater."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from pydantic import ValidationError

from release_updater.config import Settings, get_settings
from release_updater.errors import ConfigurationError, UpdateError
from release_updater.logging import get_logger, setup_logging
from release_updater.orchestrator import UpdateOrchestrator
from release_updater.paths import DeploymentRoot

log = get_logger("release_updater.cli")

PRIVILEGED_COMMANDS = frozenset({"update", "deploy", "start", "stop", "status"})

COMMAND_HELP = {
    "update": "Check for a new release, download, deploy, migrate and restart services.",
    "check": "Report whether a newer release is published. Changes nothing.",
    "deploy": "Deploy a local release archive, then migrate and restart services.",
    "start": "Start the application containers.",
    "stop": "Stop the application containers.",
    "status": "Show the status of the application containers.",
    "help": "Show this help message.",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="release-updater",
        description="Self-updating deployment manager for a docker compose application.",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Deployment root (default: UPDATER_PROJECT_ROOT or the current directory)",
    )
    sub = parser.add_subparsers(dest="command", metavar="<command>")
    for name, text in COMMAND_HELP.items():
        cmd = sub.add_parser(name, help=text, description=text)
        if name == "deploy":
            cmd.add_argument(
                "archive",
                nargs="?",
                type=Path,
                default=None,
                help="Archive to deploy (default: the download file in the root)",
            )
    return parser


def _require_root(settings: Settings, command: str) -> None:
    if not settings.require_root or command not in PRIVILEGED_COMMANDS:
        return
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() != 0:
        raise ConfigurationError(
            f"This command requires root privileges. Please run with sudo "
            f"(e.g. 'sudo release-updater {command}')."
        )


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    root = DeploymentRoot.at(args.root if args.root is not None else settings.project_root)
    orchestrator = UpdateOrchestrator.from_settings(settings, root=root)

    if args.command == "check":
        outcome = await orchestrator.check()
        print(json.dumps(outcome.to_dict(), indent=2))
        return 0

    if args.command in ("update", "deploy"):
        if args.command == "update":
            result = await orchestrator.run()
        else:
            archive = args.archive if args.archive is not None else orchestrator.archive_path
            result = await orchestrator.deploy_archive(archive.resolve())
        print(json.dumps(result.to_dict(), indent=2))
        if not result.succeeded:
            print(f"error: {result.error}", file=sys.stderr)
        return result.exit_code

    compose = orchestrator.compose
    if args.command == "start":
        await compose.up()
        log.info("containers_started")
    elif args.command == "stop":
        await compose.down()
        log.info("containers_stopped")
    elif args.command == "status":
        print(await compose.ps(), end="")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run the command and return the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help()
        return 0 if args.command == "help" else 1

    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"error: invalid updater settings: {exc}", file=sys.stderr)
        return ConfigurationError.exit_code

    setup_logging()

    try:
        _require_root(settings, args.command)
        return asyncio.run(_dispatch(args, settings))
    except UpdateError as exc:
        log.error("command_failed", command=args.command, kind=exc.kind, error=exc.message)
        print(f"error: {exc.message}", file=sys.stderr)
        return exc.exit_code


def run() -> None:
    """Run the CLI."""
    sys.exit(main())


if __name__ == "__main__":
    run()
