"""Command line entry point (``cursor-sync``)."""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from cursor_sync.config import Settings, configure_logging
from cursor_sync.exceptions import CursorSyncError
from cursor_sync.models import SyncResult
from cursor_sync.server import run_server
from cursor_sync.service import build_context, fetch_leaderboard, reset_data

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cursor-sync",
        description="Sync Cursor team usage into snapshots, stats and achievements",
    )
    parser.add_argument("--api-key", type=str, help="Cursor Admin API key (overrides CURSOR_SYNC_API_KEY)")
    parser.add_argument("--database-url", type=str, help="SQLAlchemy async URL (overrides CURSOR_SYNC_DATABASE_URL)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("sync", help="Scheduled incremental sync (respects the sync interval)")
    subparsers.add_parser("refresh", help="Manual incremental sync (shorter rate limit)")
    subparsers.add_parser("backfill", help="One-time 30-day backfill into an empty database")
    subparsers.add_parser("backfill-complete", help="Historical backfill from the inception date")
    subparsers.add_parser("status", help="Show sync metadata and lock state")

    reset = subparsers.add_parser("reset", help="Delete all synced data")
    reset.add_argument("--yes", action="store_true", help="Confirm the destructive reset")

    board = subparsers.add_parser("leaderboard", help="Print the activity leaderboard")
    board.add_argument("--days", "-d", type=int, default=7, help="Number of days to analyze (default: 7)")

    serve = subparsers.add_parser("serve", help="Run the HTTP trigger server")
    serve.add_argument("--host", type=str, default="0.0.0.0")
    serve.add_argument("--port", "-p", type=int, default=8080)

    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with command-line values taking precedence."""
    overrides = {}
    if args.api_key:
        overrides["api_key"] = args.api_key
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return Settings(**overrides)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _report(result: SyncResult) -> int:
    _print_json(result.model_dump(mode="json", exclude_none=True))
    return 0 if result.success or result.skipped else 1


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    ctx = await build_context(settings)
    try:
        if args.command == "sync":
            return _report(await ctx.orchestrator.run_scheduled_sync())
        if args.command == "refresh":
            return _report(await ctx.orchestrator.run_manual_refresh())
        if args.command == "backfill":
            return _report(await ctx.orchestrator.run_full_backfill())
        if args.command == "backfill-complete":
            return _report(await ctx.orchestrator.run_historical_backfill())
        if args.command == "status":
            _print_json(await ctx.state.get_status())
            return 0
        if args.command == "reset":
            if not args.yes:
                print("Refusing to delete all data without --yes")
                return 2
            await reset_data(ctx)
            print("All data cleared")
            return 0
        if args.command == "leaderboard":
            entries = await fetch_leaderboard(ctx, args.days)
            for rank, entry in enumerate(entries, 1):
                print(
                    f"{rank:>3}. {entry.name:<25} score={entry.total_activity_score:<8} "
                    f"lines={entry.accepted_lines_added:<7} active_days={entry.active_days_count} "
                    f"model={entry.most_used_model}"
                )
            return 0
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await ctx.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args)
    configure_logging(settings.log_level)

    if args.command == "serve":
        run_server(settings, host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(run_command(args, settings))
    except CursorSyncError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
