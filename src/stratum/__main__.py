"""Stratum - Entry Point

Usage:
    python -m stratum [--config PATH] [--db PATH] [--log-level LEVEL] [--json-logs] COMMAND

Commands:
    up       - Apply all pending migrations
    down     - Roll back the most recent migration
    version  - Show the current schema version
    history  - List applied migrations
    status   - Show applied/pending migrations and the lock
    verify   - Compare recorded checksums with the registered migrations

Exit codes:
    0    success
    1    migration or database error
    2    another process holds the migration lock
    130  timed out or interrupted

Examples:
    python -m stratum up
    python -m stratum --db ./data/app.db up --timeout 600 --lock-wait 120
    python -m stratum --json-logs status
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

from stratum import __version__
from stratum.core.errors import MigrationFailedError, MigrationInProgressError, StratumError
from stratum.core.logging import get_logger, setup_logging

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="stratum",
        description="Versioned schema migrations for the document database",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Stratum {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--db",
        default=None,
        help="Database file (overrides database.path)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit JSON log lines",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.required = True

    for name, help_text in (
        ("up", "Apply all pending migrations"),
        ("down", "Roll back the most recent migration"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--timeout",
            type=float,
            default=None,
            help="Abort the run after this many seconds (default: 300, 0 disables)",
        )
        sub.add_argument(
            "--lock-wait",
            type=float,
            default=None,
            help="Keep retrying this many seconds while the lock is busy (default: 0)",
        )

    subparsers.add_parser("version", help="Show the current schema version")
    subparsers.add_parser("history", help="List applied migrations")
    subparsers.add_parser("status", help="Show applied and pending migrations")
    subparsers.add_parser("verify", help="Detect drift between records and code")

    return parser.parse_args(argv)


def _print_history(records: list) -> None:
    if not records:
        print("No migrations applied")
        return
    for record in records:
        print(f"{record.version:>5}  {record.applied_at.isoformat()}  {record.description}")


async def run_command(args: argparse.Namespace) -> int:
    """Run one command against the configured database."""
    from stratum.app import StratumApp, load_config
    from stratum.domain.migration import Direction

    config = load_config(args.config)
    if args.db:
        config.set("database.path", args.db)
    if args.log_level:
        config.set("logging.level", args.log_level)
    if args.json_logs:
        config.set("logging.json", True)

    setup_logging(
        level=config.get("logging.level", "INFO"),
        json_output=config.get_bool("logging.json", False),
        log_file=config.get("logging.file"),
    )
    log = get_logger("cli")

    async with StratumApp(config) as app:
        manager = app.manager

        if args.command in ("up", "down"):
            direction = Direction(args.command)
            version = await app.run(
                direction,
                timeout_seconds=args.timeout,
                lock_wait_seconds=args.lock_wait,
            )
            print(f"Schema version: {version}")
            return EXIT_OK

        if args.command == "version":
            print(await manager.get_version())
            return EXIT_OK

        if args.command == "history":
            _print_history(await manager.get_migration_history())
            return EXIT_OK

        if args.command == "status":
            status = await manager.status()
            print(f"Current version: {status.current_version}")
            print(f"Latest version:  {status.latest_version}")
            for migration in status.pending:
                print(f"  pending {migration.version:>5}  {migration.description}")
            if status.lock:
                state = "expired" if status.lock["expired"] else "held"
                print(
                    f"Lock {state} by {status.lock['holder']} "
                    f"until {status.lock['expires_at']}"
                )
            return EXIT_OK

        if args.command == "verify":
            reports = await manager.verify()
            for report in reports:
                print(
                    f"{report.version:>5}  {report.reason}  "
                    f"recorded={report.recorded_description!r} "
                    f"registered={report.registered_description!r}"
                )
            if reports:
                log.warning("drift_detected", count=len(reports))
                return EXIT_ERROR
            print("No drift detected")
            return EXIT_OK

    log.error("unknown_command", command=args.command)
    return EXIT_ERROR


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    log = get_logger("cli")

    try:
        return asyncio.run(run_command(args))
    except MigrationInProgressError as e:
        log.warning("migration_lock_busy", holder=e.holder)
        print(f"Migrations are already running: {e}", file=sys.stderr)
        return EXIT_LOCKED
    except MigrationFailedError as e:
        log.error("migration_run_failed", version=e.version, description=e.description, error=str(e.cause))
        print(f"Migration {e.version} ({e.description}) failed: {e.cause}", file=sys.stderr)
        return EXIT_ERROR
    except StratumError as e:
        log.error("stratum_error", error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except (asyncio.TimeoutError, asyncio.CancelledError, KeyboardInterrupt):
        log.error("migration_run_interrupted")
        print("Interrupted; the migration lock was released", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
