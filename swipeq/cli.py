"""
swipeq command line - inspect and reconcile local queue state.

Usage:
    swipeq sync                      # resubmit unacknowledged URLs
    swipeq stats [--profile ID]      # live queue counts per cached automation
    swipeq pending                   # URLs not yet acknowledged by the worker
    swipeq cleanup --valid ID ...    # drop automations of deleted profiles
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from swipeq.config import APP_VERSION, STATE_DB_PATH, WORKER_API_URL
from swipeq.observability.logging import configure_logging, get_logger
from swipeq.queue.errors import QueueError
from swipeq.session import SwipeSession

logger = get_logger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _sync(session: SwipeSession, args: argparse.Namespace) -> int:
    summary = await session.sync()
    _print_json(summary.model_dump())
    return 0 if not summary.failed else 1


async def _stats(session: SwipeSession, args: argparse.Namespace) -> int:
    automations = session.manager.automations
    if args.profile:
        automations = {k: v for k, v in automations.items() if k == args.profile}
    if not automations:
        print("No cached automations")
        return 0

    exit_code = 0
    report = {}
    for profile_id, automation in automations.items():
        try:
            stats = await session.manager.get_queue_stats(automation.id)
            report[profile_id] = {"automation_id": automation.id, **stats.model_dump()}
        except QueueError as e:
            exit_code = 1
            report[profile_id] = {"automation_id": automation.id, "error": e.message}
    _print_json(report)
    return exit_code


async def _pending(session: SwipeSession, args: argparse.Namespace) -> int:
    entries = session.manager.get_pending_urls()
    _print_json(
        {
            "count": len(entries),
            "last_sync": session.manager.last_sync,
            "urls": [
                {"profile_id": e.profile_id, "url": e.url, "retry_count": e.retry_count}
                for e in entries
            ],
        }
    )
    return 0


async def _cleanup(session: SwipeSession, args: argparse.Namespace) -> int:
    removed = session.manager.cleanup_invalid_profiles(args.valid)
    print(f"Removed {removed} stale automation reference(s)")
    return 0


COMMANDS = {
    "sync": _sync,
    "stats": _stats,
    "pending": _pending,
    "cleanup": _cleanup,
}


async def run(args: argparse.Namespace) -> int:
    async with SwipeSession(db_path=args.db, base_url=args.api_url) as session:
        return await COMMANDS[args.command](session, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swipeq", description="Swipe queue maintenance")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--db", default=str(STATE_DB_PATH), help="Path to local state database")
    parser.add_argument("--api-url", default=WORKER_API_URL, help="Automation worker base URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Override SWIPEQ_LOG_LEVEL for this run",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("sync", help="Resubmit URLs not yet acknowledged by the worker")
    stats = subparsers.add_parser("stats", help="Show live queue counts")
    stats.add_argument("--profile", help="Only this profile id")
    subparsers.add_parser("pending", help="List unacknowledged URLs")
    cleanup = subparsers.add_parser("cleanup", help="Drop automations of deleted profiles")
    cleanup.add_argument(
        "--valid",
        nargs="+",
        required=True,
        metavar="PROFILE_ID",
        help="Profile ids that still exist; every other profile is dropped",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level:
        configure_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
