"""Administrative command line for branch ledgers.

Usage:
    branch-ledger show B1 B2
    branch-ledger summary B1 --as-of=2026-03-31T23:59:00+00:00
    branch-ledger reset B1
    branch-ledger reset --all
    branch-ledger rebuild
    branch-ledger clear-checkpoint B1
    branch-ledger serve --rebuild
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Any

import structlog

from branch_ledger.config import configure_logging, get_settings
from branch_ledger.errors import LedgerError
from branch_ledger.events import EventPublisher, LedgerWatcher
from branch_ledger.service import LedgerService
from branch_ledger.stores.registry import HTTPBranchRegistry
from branch_ledger.stores.sqlite import SQLiteDatabase, SQLiteLedgerStore, SQLiteReportStore

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="branch-ledger",
        description="Inspect and administer per-branch cumulative ledgers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s show B1 B2           # Recalculate and print two ledgers
  %(prog)s reset --all          # Close the accounting period for every branch
  %(prog)s rebuild              # Recalculate every active branch (drift repair)
  %(prog)s serve --rebuild      # Repair drift, then stream ledger changes to dashboards
        """,
    )
    parser.add_argument("--db", default=None, help="SQLite database path (default: settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    show = sub.add_parser("show", help="Print fresh ledgers")
    show.add_argument("branches", nargs="*", help="Branch ids (default: all active)")

    summary = sub.add_parser("summary", help="Print daily/monthly/cumulative summary")
    summary.add_argument("branch")
    summary.add_argument("--as-of", type=datetime.fromisoformat, default=None)

    reset = sub.add_parser("reset", help="Zero a branch total and move its checkpoint")
    target = reset.add_mutually_exclusive_group(required=True)
    target.add_argument("branch", nargs="?")
    target.add_argument("--all", action="store_true", help="Reset every branch")

    sub.add_parser("rebuild", help="Recalculate every active branch")

    clear = sub.add_parser("clear-checkpoint", help="Count a branch's full history again")
    clear.add_argument("branch")

    serve = sub.add_parser("serve", help="Stream ledger changes to WebSocket dashboards")
    serve.add_argument(
        "--rebuild", action="store_true", help="Recalculate every active branch before streaming"
    )
    serve.add_argument(
        "--interval", type=float, default=None, help="Seconds between polls (default: settings)"
    )

    return parser


def build_service(db_path: str | None, publish: bool = False) -> LedgerService:
    settings = get_settings()
    db = SQLiteDatabase(db_path or settings.ledger_db_path)
    return LedgerService(
        SQLiteReportStore(db),
        SQLiteLedgerStore(db),
        HTTPBranchRegistry(),
        publisher=EventPublisher() if publish else None,
    )


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


async def serve(service: LedgerService, rebuild: bool, interval: float | None) -> int:
    """Run the publisher and the ledger watcher until cancelled."""
    publisher = service.publisher
    watcher = LedgerWatcher(service.engine.ledgers, publisher, interval=interval)
    await publisher.start()
    try:
        if rebuild:
            await service.rebuild_all()
        await watcher.run()
        return 0
    finally:
        watcher.stop()
        await publisher.stop()


async def execute(args: argparse.Namespace) -> int:
    """Run one command; return the process exit status."""
    service = build_service(args.db, publish=args.command == "serve")
    registry = service.engine.registry
    try:
        if args.command == "show":
            if args.branches:
                ledgers = await service.get_ledgers(args.branches)
                _print([ledger.to_dict() for ledger in ledgers])
            else:
                _print((await service.overview()).to_dict())
        elif args.command == "summary":
            _print((await service.summary(args.branch, args.as_of)).to_dict())
        elif args.command == "reset":
            ledgers = await service.reset(None if args.all else args.branch)
            _print([ledger.to_dict() for ledger in ledgers])
        elif args.command == "rebuild":
            result = await service.rebuild_all()
            _print(result.to_dict())
            return 0 if result.ok else 1
        elif args.command == "clear-checkpoint":
            total = await service.clear_checkpoint(args.branch)
            _print({"branch_id": args.branch, "cumulative_total": str(total)})
        elif args.command == "serve":
            return await serve(service, args.rebuild, args.interval)
    except LedgerError as e:
        logger.error("command_failed", command=args.command, error=str(e), retryable=e.retryable)
        return 1
    finally:
        if isinstance(registry, HTTPBranchRegistry):
            await registry.close()
    return 0


def run(argv: list[str] | None = None) -> None:
    configure_logging(stream=sys.stderr)
    args = build_parser().parse_args(argv)
    try:
        sys.exit(asyncio.run(execute(args)))
    except KeyboardInterrupt:
        logger.info("interrupted")


if __name__ == "__main__":
    run()
