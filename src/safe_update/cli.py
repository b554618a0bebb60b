"""
Command-line interface for the Safe Self-Update Engine.

Commands:
    safe-update check [--force]
    safe-update update [--version V] [--trigger T] [--actor A]
    safe-update status SESSION_ID
    safe-update history [--limit N]
    safe-update cleanup

Results are printed as JSON on stdout.

Exit codes:
    0  success
    1  generic or usage error
    2  another update is in progress
    3  update failed, installation unchanged or restored
    4  update failed and the restore failed; manual recovery required
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

import yaml
from pydantic import ValidationError

from safe_update import __version__
from safe_update.config import AppConfig, load_config
from safe_update.errors import UpdateError, UpdateInProgressError
from safe_update.logging import get_logger, setup_logging
from safe_update.updates.messages import get_message
from safe_update.updates.models import TriggerLocation, UpdateSession, UpdateStatus
from safe_update.updates.state_machine import UpdateOrchestrator, session_summary

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_IN_PROGRESS = 2
EXIT_RECOVERABLE = 3
EXIT_UNRECOVERABLE = 4

# Codes recorded when restoring the backup failed
RESTORE_ERROR_CODES = frozenset(
    {"backup_not_found", "backup_corrupted", "restore_timeout", "restore_failed"}
)


def exit_code_for(session: UpdateSession) -> int:
    """Map a finished session to a process exit code."""
    if session.status == UpdateStatus.COMPLETE:
        return EXIT_OK
    if session.status == UpdateStatus.ROLLED_BACK:
        return EXIT_RECOVERABLE
    if session.error is not None and session.error.code in RESTORE_ERROR_CODES:
        return EXIT_UNRECOVERABLE
    return EXIT_RECOVERABLE


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="safe-update",
        description="Safe Self-Update Engine",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Override log level",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    check = subparsers.add_parser("check", help="Check for a newer release")
    check.add_argument("--force", action="store_true", help="Bypass the release cache")

    update = subparsers.add_parser("update", help="Install a release")
    update.add_argument(
        "--version",
        dest="target_version",
        default=None,
        help="Version to install (default: latest)",
    )
    update.add_argument(
        "--trigger",
        choices=[t.value for t in TriggerLocation],
        default=TriggerLocation.COMMAND_LINE.value,
        help="Where the request comes from",
    )
    update.add_argument("--actor", default="system", help="Identity requesting the update")

    status = subparsers.add_parser("status", help="Show an update session")
    status.add_argument("session_id", help="Session id returned by 'update'")

    history = subparsers.add_parser("history", help="Show recent updates")
    history.add_argument("--limit", type=int, default=5, help="Number of entries")

    subparsers.add_parser("cleanup", help="Remove orphaned downloads and old backups")

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_error(error: UpdateError, config: AppConfig) -> None:
    message = get_message(
        error.error_code,
        error.details,
        release_url=config.unit.public_release_url,
    )
    print(f"Error: {message.render()}", file=sys.stderr)


async def _run_command(args: argparse.Namespace, config: AppConfig) -> int:
    orchestrator = UpdateOrchestrator.from_config(config)

    if args.command == "check":
        release = await orchestrator.check_for_update(force=args.force)
        _print_json(release.model_dump(mode="json"))
        return EXIT_OK

    if args.command == "update":
        try:
            session_id = await orchestrator.request_update(
                args.target_version,
                TriggerLocation(args.trigger),
                args.actor,
            )
        except UpdateInProgressError as e:
            _print_error(e, config)
            return EXIT_IN_PROGRESS

        session = orchestrator.get_status(session_id)
        _print_json(session_summary(session))
        if session.error is not None:
            message = get_message(
                session.error.code,
                session.error.context,
                release_url=config.unit.public_release_url,
            )
            print(f"Error: {message.render()}", file=sys.stderr)
        return exit_code_for(session)

    if args.command == "status":
        session = orchestrator.get_status(args.session_id)
        _print_json(session_summary(session))
        return EXIT_OK

    if args.command == "history":
        entries = orchestrator.get_history(args.limit)
        _print_json([entry.model_dump(mode="json") for entry in entries])
        return EXIT_OK

    if args.command == "cleanup":
        _print_json(
            {
                "orphans_removed": orchestrator.cleanup_orphans(),
                "backups_removed": orchestrator.cleanup_old_backups(),
            }
        )
        return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """
    Entry point of the ``safe-update`` console script.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}

    try:
        config = load_config(args.config, overrides=overrides)
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_ERROR

    setup_logging(config.logging)

    try:
        return asyncio.run(_run_command(args, config))
    except UpdateError as e:
        logger.error(
            f"Command failed: {e.message}",
            extra={"command": args.command, "error_code": e.error_code},
        )
        _print_error(e, config)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
