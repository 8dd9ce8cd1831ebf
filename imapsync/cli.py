"""CLI entry point for imap-sync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .commands import run_sync
from .config import default_config_path, load_config
from .errors import ConfigError

logger = logging.getLogger("imapsync")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="imap-sync",
        description="Two-way synchronization between IMAP accounts and local Maildirs",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=default_config_path(),
        help="Path to configuration file",
    )
    parser.add_argument(
        "-a", "--account",
        action="append",
        dest="accounts",
        metavar="NAME",
        help="Only synchronize this account (can be repeated)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--push-only",
        action="store_true",
        help="Only upload new local messages",
    )
    mode.add_argument(
        "--pull-only",
        action="store_true",
        help="Only download new server messages",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {args.config}")
        sys.exit(1)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    if args.accounts:
        unknown = [name for name in args.accounts if config.get_account(name) is None]
        if unknown:
            parser.error(f"unknown account: {', '.join(unknown)}")

    ok = asyncio.run(
        run_sync(
            config,
            args.accounts,
            push=not args.pull_only,
            pull=not args.push_only,
        )
    )
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
