"""Entry point for the command-line interface."""

from __future__ import annotations

import argparse
import logging
import sys

from ..log import configure_logging
from ..settings import AppSettings, load_app_settings
from ..transport.errors import TransportError, describe_failure
from .commands import COMMANDS

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Construct argument parser for CLI commands."""
    parser = argparse.ArgumentParser(prog="chatsync", description="chatsync CLI")
    parser.add_argument(
        "--settings",
        help="path to JSON/TOML settings",
    )
    parser.add_argument(
        "--state",
        help="path to the SQLite file holding cached history",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="show informational events on the console",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    for name, cmd in COMMANDS.items():
        p = sub.add_parser(name, help=cmd.help)
        cmd.add_arguments(p)
        p.set_defaults(func=cmd.func)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.INFO if args.verbose else logging.WARNING)
    try:
        settings = AppSettings()
        if args.settings:
            settings = load_app_settings(args.settings)
    except (OSError, ValueError) as exc:
        sys.stderr.write(f"Invalid settings: {exc}\n")
        return 2
    args.app_settings = settings.with_environment()
    try:
        args.func(args)
    except TransportError as exc:
        # The session already reported the failure through its presenter.
        logger.debug("Command %s failed: %s", args.command, describe_failure(exc))
        return 1
    except LookupError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
