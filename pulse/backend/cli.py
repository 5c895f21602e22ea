"""Command line interface: pulse <command>

Every command drives one sync-service operation and prints its result as
JSON on stdout; progress and errors go to stderr.

Usage:
    pulse sync                      # Incremental sync since the last successful run
    pulse sync --full               # Full sync, no time window
    pulse sync --repo R_123 --repo R_456
    pulse backfill 2024-01-01       # Day-by-day windows from a date to now
    pulse resync I_kwDOabc          # Re-fetch a single issue / PR / discussion
    pulse automation --force        # Re-run status automation
    pulse attention                 # Print follow-up insights
    pulse status                    # Config, recent runs and logs
"""

import os
os.environ.pop("CLAUDECODE", None)  # Allow nested Claude SDK calls

import argparse
import asyncio
import json
import logging
import sys

import attention
import database as db
import sync_service
from config import settings

# Commands that talk to GitHub; the bool says whether an organization is required
GITHUB_COMMANDS = {"sync": True, "backfill": True, "resync": False}


def _progress(msg: str) -> None:
    """Print a progress message to stderr (keeps stdout clean for output)."""
    print(f"\033[90m  → {msg}\033[0m", file=sys.stderr)


def _error(msg: str) -> None:
    print(f"\033[31m  ✗ {msg}\033[0m", file=sys.stderr)


def _success(msg: str) -> None:
    print(f"\033[32m  ✓ {msg}\033[0m", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulse",
        description="Sync GitHub organization activity and surface items needing follow-up",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log INFO messages from the sync engine")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Collect activity from GitHub")
    sync.add_argument("--full", action="store_true", help="Ignore watermarks and collect everything")
    sync.add_argument(
        "--repo", action="append", dest="repository_ids", default=None,
        help="Restrict the run to a repository node id (repeatable)",
    )

    backfill = sub.add_parser("backfill", help="Collect day-sized windows from a start date to now")
    backfill.add_argument("start_date", help="Start date (YYYY-MM-DD, UTC)")

    resync = sub.add_parser("resync", help="Re-fetch one issue, pull request or discussion")
    resync.add_argument("item_id", help="GitHub node id")

    automation = sub.add_parser("automation", help="Run issue status automation")
    automation.add_argument(
        "--force", action="store_true",
        help="Run even if already applied for the current sync generation",
    )

    sub.add_parser("attention", help="Print follow-up insights")
    sub.add_parser("status", help="Print sync config, recent runs and logs")
    return parser


# --------------- Commands ---------------

async def cmd_sync(args: argparse.Namespace) -> dict:
    mode = "full" if args.full else "incremental"
    _progress(f"Starting {mode} sync...")
    result = await sync_service.run_sync(mode, args.repository_ids, progress=_progress)
    _success(f"Sync run {result['run_id']} completed: {result['summary']['counts']}")
    return result


async def cmd_backfill(args: argparse.Namespace) -> dict:
    _progress(f"Backfilling from {args.start_date}...")
    result = await sync_service.run_backfill(args.start_date, progress=_progress)
    failed = [c for c in result["chunks"] if c["status"] == "failed"]
    if failed:
        _error(f"Backfill stopped at {failed[0]['since']}: {failed[0]['error']}")
    else:
        _success(f"Backfill completed in {result['chunk_count']} chunks")
    return result


async def cmd_resync(args: argparse.Namespace) -> dict:
    result = await sync_service.resync_item(args.item_id)
    _success(f"Resynced {result['type']} {result['id']}")
    return result


async def cmd_automation(args: argparse.Namespace) -> dict:
    result = await sync_service.run_status_automation(force=args.force, trigger="cli")
    if result.get("skipped"):
        _progress("Already applied for the current sync generation (use --force to re-run)")
    else:
        _success("Status automation completed")
    return result


async def cmd_attention(args: argparse.Namespace) -> dict:
    result = await attention.get_attention_insights()
    counts = result.get("counts", {})
    width = max((len(k) for k in counts), default=0)
    for key, count in counts.items():
        marker = "\033[33m" if count else "\033[90m"
        print(f"  {marker}{key.ljust(width)}  {count}\033[0m", file=sys.stderr)
    return result


async def cmd_status(args: argparse.Namespace) -> dict:
    return await sync_service.fetch_sync_status()


COMMANDS = {
    "sync": cmd_sync,
    "backfill": cmd_backfill,
    "resync": cmd_resync,
    "automation": cmd_automation,
    "attention": cmd_attention,
    "status": cmd_status,
}


async def check_credentials(command: str) -> str | None:
    """Error message when a GitHub command lacks its token or organization."""
    if command not in GITHUB_COMMANDS:
        return None
    if not settings.GITHUB_TOKEN:
        return "GITHUB_TOKEN not set. Export it or add to .env file."
    if GITHUB_COMMANDS[command]:
        config = await db.get_sync_config()
        if not (config.get("org_name") or settings.GITHUB_ORG):
            return "GITHUB_ORG not set. Export it or add to .env file."
    return None


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    await db.init_db()

    problem = await check_credentials(args.command)
    if problem:
        _error(problem)
        return 1

    try:
        result = await COMMANDS[args.command](args)
    except (sync_service.ConfigurationError, sync_service.SyncInProgressError, ValueError) as e:
        _error(str(e))
        return 1
    except Exception as e:
        logging.getLogger(__name__).debug(f"{args.command} failed", exc_info=True)
        _error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


def run(argv: list[str] | None = None) -> int:
    return asyncio.run(main(argv))
