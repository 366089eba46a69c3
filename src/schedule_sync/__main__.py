"""Entry point for ``python -m schedule_sync``.

Uses stdlib :mod:`argparse` for argument parsing.

Subcommands:
    run             -- Default. Execute one sync run for every linked user.
    serve           -- Run on the configured interval until interrupted.
                       ``SIGUSR1`` triggers an extra run.
    cleanup         -- Drop desired events that ended long ago.
    reset-calendars -- Delete every managed calendar and its mappings.
    stats           -- Print the last sync time and linked user count.
    link-url        -- Print the consent URL for a user.

Exit codes:
    0 -- Command completed (users skipped or failed inside a run included).
    1 -- An error occurred (config error, run aborted, store failure).
    2 -- Argument parsing error (handled by argparse).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import datetime, timedelta, timezone

from schedule_sync.config import ConfigError, Settings, load_settings
from schedule_sync.exceptions import StoreError
from schedule_sync.linking import AccountLinker
from schedule_sync.log import setup_logging
from schedule_sync.models.sync import RunReport
from schedule_sync.store.sqlite import SQLiteStateStore, StoreEventSource
from schedule_sync.sync.accounts import AccountResolver
from schedule_sync.sync.orchestrator import SyncOrchestrator
from schedule_sync.sync.reset import reset_calendars

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="schedule-sync",
        description="Synchronise users' schedules into their Google Calendars.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Enable debug-level logging.",
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Execute one sync run.")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Sync on an interval until interrupted.",
    )
    serve_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between runs (defaults to SYNC_INTERVAL from config).",
    )

    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Drop desired events that ended long ago.",
    )
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Age in days after which ended events are dropped (default: 30).",
    )

    subparsers.add_parser(
        "reset-calendars",
        help="Delete every managed calendar and forget its mappings.",
    )
    subparsers.add_parser("stats", help="Print sync statistics as JSON.")

    link_parser = subparsers.add_parser(
        "link-url",
        help="Print the Google consent URL for a user.",
    )
    link_parser.add_argument("user_id", type=str, help="User to link.")

    return parser


def _resolve_command(parser: argparse.ArgumentParser, argv: list[str]) -> argparse.Namespace:
    """Parse *argv*, defaulting to the ``run`` subcommand.

    Args:
        parser: The top-level argument parser.
        argv: Command-line arguments.

    Returns:
        Parsed :class:`argparse.Namespace`.
    """
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def _print_report(report: RunReport) -> None:
    totals = report.totals
    print(
        f"Sync {report.status} in {report.duration_seconds:.1f}s: "
        f"{report.synced_users} synced, {report.skipped_users} skipped, "
        f"{report.failed_users} failed"
    )
    print(
        f"Events: {totals.created} created, {totals.updated} updated, "
        f"{totals.deleted} deleted, {totals.failed} failed"
    )
    if report.error:
        print(f"Error: {report.error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_run(settings: Settings, store: SQLiteStateStore) -> int:
    orchestrator = SyncOrchestrator.from_settings(settings, store, StoreEventSource(store))
    report = await orchestrator.run_once("manual")
    if report is None:
        return 1
    _print_report(report)
    return 0 if report.status == "completed" else 1


async def _handle_serve(settings: Settings, store: SQLiteStateStore, interval: float | None) -> int:
    orchestrator = SyncOrchestrator.from_settings(settings, store, StoreEventSource(store))
    linker = AccountLinker.from_settings(store, settings)
    loop = asyncio.get_running_loop()

    with contextlib.suppress(NotImplementedError, AttributeError):
        loop.add_signal_handler(signal.SIGUSR1, orchestrator.trigger_manual)
        loop.add_signal_handler(signal.SIGTERM, orchestrator.request_stop)

    try:
        await orchestrator.serve(
            interval if interval is not None else settings.sync_interval,
            after_run=linker.process_login_attempts,
        )
    except asyncio.CancelledError:
        orchestrator.request_stop()
    return 0


async def _handle_reset(settings: Settings, store: SQLiteStateStore) -> int:
    summary = await reset_calendars(store, AccountResolver.from_settings(store, settings))
    print(f"Reset {summary.reset} calendar(s), {summary.failed} failed")
    return 0 if summary.failed == 0 else 1


def _handle_cleanup(store: SQLiteStateStore, days: int) -> int:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    removed = store.cleanup_desired_events(cutoff)
    print(f"Removed {removed} desired event(s) that ended before {cutoff:%Y-%m-%d}")
    return 0


def _handle_stats(settings: Settings, store: SQLiteStateStore) -> int:
    orchestrator = SyncOrchestrator.from_settings(settings, store, StoreEventSource(store))
    stats = orchestrator.stats()
    stats["sync_interval_minutes"] = settings.sync_interval / 60
    print(json.dumps(stats, indent=2))
    return 0


def _handle_link_url(settings: Settings, store: SQLiteStateStore, user_id: str) -> int:
    print(AccountLinker.from_settings(store, settings).authorization_url(user_id))
    return 0


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    store = SQLiteStateStore(settings.database_path)

    if args.command == "serve":
        try:
            return asyncio.run(_handle_serve(settings, store, args.interval))
        except KeyboardInterrupt:
            return 0
    if args.command == "cleanup":
        return _handle_cleanup(store, args.days)
    if args.command == "reset-calendars":
        return asyncio.run(_handle_reset(settings, store))
    if args.command == "stats":
        return _handle_stats(settings, store)
    if args.command == "link-url":
        return _handle_link_url(settings, store, args.user_id)
    return asyncio.run(_handle_run(settings, store))


def main(argv: list[str] | None = None) -> int:
    """Run the schedule-sync CLI.

    Args:
        argv: Command-line arguments.  Defaults to ``sys.argv[1:]``
            when ``None`` (the normal case).

    Returns:
        Exit code: ``0`` on success, ``1`` on error.
    """
    parser = build_parser()
    args = _resolve_command(parser, argv if argv is not None else sys.argv[1:])

    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    # --- Configure logging --------------------------------------------
    try:
        setup_logging("DEBUG" if args.verbose else settings.log_level)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        return _dispatch(args, settings)
    except StoreError as exc:
        logger.error("State store failure: %s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
