"""
NFT Mirror — Manual Sync Script

Runs exactly one sync job immediately and exits with a status code:
    0  completed
    1  completed with item errors
    2  aborted mid-run
    3  not started (SYNC_ENABLED is off, or invalid arguments)

Usage:
    python scripts/sync_now.py --listings
    python scripts/sync_now.py --listings --token-id 42
    python scripts/sync_now.py --sales-history --start-token-id 1 --end-token-id 100
    python scripts/sync_now.py --traits --batch 3
    python scripts/sync_now.py --owners
    python scripts/sync_now.py --ownership
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import NoReturn

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nftmirror.config import SyncKind, settings
from nftmirror.main import configure_logging, create_db_engine
from nftmirror.pipeline.runner import RunOptions, RunStatus, SyncRunner, install_signal_handlers

EXIT_NOT_STARTED = RunStatus.INVALID.exit_code


class SyncArgumentParser(argparse.ArgumentParser):
    """Argument errors mean the run never started."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_NOT_STARTED, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = SyncArgumentParser(
        description="Run one NFT Mirror sync job now.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/sync_now.py --listings
  python scripts/sync_now.py --listings --token-id 42
  python scripts/sync_now.py --sales-history --start-token-id 1 --end-token-id 100
  python scripts/sync_now.py --traits --batch 3
  python scripts/sync_now.py --owners
  python scripts/sync_now.py --ownership
""",
    )
    jobs = parser.add_mutually_exclusive_group(required=True)
    jobs.add_argument(
        "--listings", "--sync-listings",
        dest="kind", action="store_const", const=SyncKind.LISTINGS,
        help="Reconcile listings (full order book, or per token with a token range).",
    )
    jobs.add_argument(
        "--sales-history", "--sync-sales-history",
        dest="kind", action="store_const", const=SyncKind.SALES_HISTORY,
        help="Catch up sales history for a token range.",
    )
    jobs.add_argument(
        "--traits", "--sync-traits",
        dest="kind", action="store_const", const=SyncKind.TRAITS,
        help="Load trait metadata for tokens that have none.",
    )
    jobs.add_argument(
        "--owners", "--sync-owners",
        dest="kind", action="store_const", const=SyncKind.OWNERS,
        help="Refresh the holder snapshot and collection stats.",
    )
    jobs.add_argument(
        "--ownership", "--sync-ownership",
        dest="kind", action="store_const", const=SyncKind.OWNERSHIP,
        help="Mirror the current owner wallet of every token.",
    )

    parser.add_argument(
        "--ticker",
        type=str,
        default=settings.DEFAULT_TICKER,
        help=f"Collection ticker (default: {settings.DEFAULT_TICKER}).",
    )
    parser.add_argument("--token-id", type=int, default=None, help="Sync a single token.")
    parser.add_argument("--start-token-id", type=int, default=None, help="First token of the range.")
    parser.add_argument("--end-token-id", type=int, default=None, help="Last token of the range.")
    parser.add_argument(
        "--batch",
        type=int,
        default=None,
        help=f"Legacy batch number N: tokens (N-1)*{settings.LEGACY_BATCH_WIDTH}+1 .. N*{settings.LEGACY_BATCH_WIDTH}.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Tokens per progress batch (holders per write batch for --owners, tokens per upsert for --ownership).",
    )
    parser.add_argument(
        "--no-verify",
        dest="verify",
        action="store_false",
        help="Skip the post-sync verification sample for listings.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL for this run.",
    )
    return parser


def options_from_args(args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        ticker=args.ticker,
        token_id=args.token_id,
        start_token_id=args.start_token_id,
        end_token_id=args.end_token_id,
        batch=args.batch,
        batch_size=args.batch_size,
        verify=args.verify,
    )


async def run_sync(args: argparse.Namespace) -> int:
    engine, session_factory = create_db_engine()
    runner = SyncRunner(session_factory)
    install_signal_handlers(runner.request_stop)

    try:
        summary = await runner.run(args.kind, options_from_args(args))
    finally:
        await engine.dispose()

    print(f"Sync {summary.kind.value}: {summary.status.value} (exit {summary.exit_code})")
    print(f"  duration      = {summary.duration_seconds}s")
    print(f"  item errors   = {summary.item_errors}")
    if summary.error:
        print(f"  error         = {summary.error}")
    if summary.verification:
        print(f"  verification  = {summary.verification}")
    return summary.exit_code


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return asyncio.run(run_sync(args))


if __name__ == "__main__":
    sys.exit(main())
