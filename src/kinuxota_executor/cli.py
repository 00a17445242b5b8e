"""
Command-line entry point of the KinuxOTA update executor.

Usage:
    kinuxota-executor <version> [command_id] [--config PATH] [--log-level LEVEL]
    kinuxota-executor --list-backups

Exit status is 0 when the update completed and 1 on every failure path.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kinuxota_executor.backup import BackupManager
from kinuxota_executor.config import ExecutorConfig, load_config
from kinuxota_executor.errors import InvalidArgumentError
from kinuxota_executor.logging import get_logger, setup_logging
from kinuxota_executor.operations import resolve_executable_path
from kinuxota_executor.state_machine import UpdateExecutor, UpdateRequest

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="kinuxota-executor",
        description="Install a staged KinuxOTA client binary with rollback on failure",
    )

    parser.add_argument("version", nargs="?", help="Version being installed")
    parser.add_argument(
        "command_id",
        nargs="?",
        help="Backend command id (generated when omitted)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to the executor YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--list-backups",
        action="store_true",
        help="List backups of the live executable and exit",
    )
    return parser


def _cli_overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed arguments into configuration overrides."""
    overrides: dict[str, Any] = {}
    if parsed.log_level:
        overrides["logging"] = {"level": parsed.log_level}
    return overrides


def _list_backups(config: ExecutorConfig) -> int:
    """Print the backups of the live executable, newest first."""
    live_path = resolve_executable_path(
        config.target.executable_name,
        config.target.default_executable_path,
        config.target.executable_path,
    )
    for backup in BackupManager().list_backups(Path(live_path)):
        print(backup)
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    """
    Run the executor.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Process exit status.
    """
    parsed = build_parser().parse_args(argv)

    try:
        config = load_config(parsed.config, overrides=_cli_overrides(parsed))
    except (OSError, ValidationError, yaml.YAMLError) as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FAILURE

    setup_logging(config.logging)

    if parsed.list_backups:
        return _list_backups(config)

    if parsed.version is None:
        logger.error("Missing argument - version number")
        logger.error("Usage: kinuxota-executor <version_number> [command_id]")
        return EXIT_FAILURE

    try:
        request = UpdateRequest.create(parsed.version, parsed.command_id)
    except InvalidArgumentError as e:
        logger.error(e.message, extra={"error": e.to_dict()})
        return EXIT_FAILURE

    if parsed.command_id:
        logger.info(f"Using command ID: {request.command_id}")
    else:
        logger.info(f"No command ID provided, generated {request.command_id}")

    result = asyncio.run(UpdateExecutor(config).run(request))

    if result.succeeded:
        logger.info(result.message, extra={"version": result.version})
    else:
        logger.error(
            result.message,
            extra={
                "version": result.version,
                "rolled_back": result.rolled_back,
                "restore_failed": result.restore_failed,
            },
        )

    return result.exit_code
