"""Command-line entry point: ``gtask-sync``.

Resolves the configuration (``.env``, YAML files, environment, arguments),
sets up logging from the ``logging`` section and ``Config.debug``, runs one
sync and prints the report to stdout.  Logs go to stderr.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

import yaml

from . import __version__
from .config_schema import load_unified_config, resolve_config
from .core.client import TasksClient
from .logger import setup_logging
from .sync.engine import SyncEngine
from .sync.reporter import format_sync_report, report_to_json

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SYNC_ERRORS = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gtask-sync",
        description="Two-way sync between Markdown task lists and Google Tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync with settings from .env, .gtask/config.yml and GTASK_* variables
  gtask-sync

  # Preview what would change
  gtask-sync --dry-run

  # Sync another directory and print the report as JSON
  gtask-sync --markdown-dir ~/notes/tasks --json

The access token is read from GTASK_ACCESS_TOKEN or the config file.
        """,
    )
    parser.add_argument(
        "--markdown-dir",
        help="Directory scanned for Markdown task files (overrides GTASK_MARKDOWN_DIR)",
    )
    parser.add_argument(
        "--mapping-file",
        help="Identity mapping file (overrides GTASK_MAPPING_FILE)",
    )
    parser.add_argument(
        "--api-url",
        help="Tasks API base URL (overrides GTASK_API_URL)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Plan the sync and print it without changing anything",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    parser.add_argument(
        "--verbosity",
        choices=["error", "warn", "info"],
        help="Log verbosity (default: the logging.level setting)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        help="Also write logs to this file (default: the logging.file setting)",
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log record format (default: text)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"gtask-sync version {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one sync from the command line.

    Returns:
        ``0`` on success, ``1`` when the run reported errors and ``2`` when
        the configuration is invalid.
    """
    args = build_parser().parse_args(argv)

    overrides = {
        "markdown_dir": args.markdown_dir,
        "mapping_file": args.mapping_file,
        "api_url": args.api_url,
        "debug": args.debug,
    }
    try:
        unified = load_unified_config()
        config = resolve_config(
            unified, **{k: v for k, v in overrides.items() if v}
        )
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"ERROR: Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(
        verbosity=args.verbosity or unified.logging.level,
        debug=config.debug,
        log_file=args.log_file or unified.logging.file,
        debug_format=args.log_format,
    )
    logger.info("Syncing %s", config.markdown_dir)

    engine = SyncEngine(TasksClient(config), config)
    report = engine.run(dry_run=args.dry_run)

    if args.json:
        print(json.dumps(report_to_json(report), indent=2))
    else:
        print(format_sync_report(report))
    return EXIT_OK if report.success else EXIT_SYNC_ERRORS


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
