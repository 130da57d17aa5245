"""Command-line interface for treehash."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from . import __version__

logger = logging.getLogger(__name__)


def _load_dotenv_files() -> None:
    """Load ``TREEHASH_*`` overrides from .env files without clobbering the environment."""
    for candidate in (Path.cwd() / ".env", Path.home() / ".config" / "treehash" / ".env"):
        if candidate.is_file():
            load_dotenv(candidate, override=False)


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(name)s: %(message)s",
    )


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=Path.home() / ".config" / "treehash" / "settings.json",
        help="Settings path (default: ~/.config/treehash/settings.json)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON output",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="treehash",
        description="Resumable, race-aware content hashing for large file trees",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"treehash {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    hash_parser = subparsers.add_parser(
        "hash",
        help="Hash every file under a root into a resumable log",
    )
    hash_parser.add_argument(
        "root",
        type=Path,
        help="Root directory to hash",
    )
    hash_parser.add_argument(
        "--log",
        type=Path,
        required=True,
        help="Result log path (reused to resume an interrupted run)",
    )
    hash_parser.add_argument(
        "--algorithm",
        help="Hash algorithm: MD5, SHA1, SHA256, SHA384, SHA512",
    )
    hash_parser.add_argument(
        "--retries",
        type=int,
        help="Attempts per file for transient I/O errors",
    )
    hash_parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds to wait for read access per attempt",
    )
    hash_parser.add_argument(
        "--workers",
        type=int,
        help="Number of worker threads",
    )
    hash_parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail files that change while being hashed",
    )
    hash_parser.add_argument(
        "--verify",
        action="store_true",
        help="Compare file metadata before and after hashing",
    )
    hash_parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Hash files again that a previous run recorded as failed",
    )
    hash_parser.add_argument(
        "--sort-mode",
        choices=["path", "filename"],
        help="Composite sort key (filename is the legacy, collision-prone key)",
    )
    hash_parser.add_argument(
        "--combine-mode",
        choices=["concat", "streaming"],
        help="Composite combination mode",
    )
    hash_parser.add_argument(
        "--exclude",
        action="append",
        help="fnmatch pattern to skip (repeatable)",
    )
    hash_parser.add_argument(
        "--follow-symlinks",
        action="store_true",
        help="Follow symlinked files and directories",
    )
    hash_parser.add_argument(
        "--probe-timeout",
        type=float,
        help="Seconds to wait for the root to respond before starting",
    )
    _add_common_options(hash_parser)

    summary_parser = subparsers.add_parser(
        "summary",
        help="Recompute the composite hash from an existing log",
    )
    summary_parser.add_argument(
        "--log",
        type=Path,
        required=True,
        help="Result log path",
    )
    summary_parser.add_argument(
        "--root",
        type=Path,
        help="Root used for relative sort keys (default: source recorded in the log)",
    )
    summary_parser.add_argument(
        "--algorithm",
        help="Composite algorithm (default: algorithm recorded in the log)",
    )
    summary_parser.add_argument(
        "--sort-mode",
        choices=["path", "filename"],
        help="Composite sort key",
    )
    summary_parser.add_argument(
        "--combine-mode",
        choices=["concat", "streaming"],
        help="Composite combination mode",
    )
    _add_common_options(summary_parser)

    probe_parser = subparsers.add_parser(
        "probe",
        help="Check that a root or its file server responds",
    )
    probe_parser.add_argument(
        "path",
        type=Path,
        help="Path to probe",
    )
    probe_parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds before giving up",
    )
    _add_common_options(probe_parser)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    _load_dotenv_files()
    _configure_logging(args.verbose)

    try:
        # Import here to avoid slow startup
        if args.command == "hash":
            from .commands.hash import run_hash
            return run_hash(args)
        elif args.command == "summary":
            from .commands.summary import run_summary
            return run_summary(args)
        elif args.command == "probe":
            from .commands.probe import run_probe
            return run_probe(args)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        from .errors import CANCELLED_EXIT_CODE

        print("Interrupted", file=sys.stderr)
        return CANCELLED_EXIT_CODE
    except Exception as exc:
        from .errors import exit_code_for_exception

        logger.debug("Command %s failed", args.command, exc_info=True)
        print(str(exc), file=sys.stderr)
        return exit_code_for_exception(exc)


if __name__ == "__main__":
    sys.exit(main())
