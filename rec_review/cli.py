"""
Command-line entry point for the protocol review engine.

Commands:
- init: create the database and its schema
- sweep: expire overdue protocols and archive old terminal ones
- report: write a Markdown status report
- check: run data quality checks (exit code 1 on failure)
- watch: print each confirmed version of a protocol as it changes

Usage:
    python -m rec_review [--config config.yaml] {init,sweep,report,check,watch}
"""
import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from tabulate import tabulate

from .config import ReviewConfig, load_config
from .errors import ReviewEngineError
from .observability import LifecycleMetrics, LifecycleQualityChecker, StatusReporter
from .service import ProtocolReviewService
from .storage import DataAccessLayer, get_database, get_store, reset_store
from .sync import SyncHub, SyncNotification


logger = logging.getLogger(__name__)


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def cmd_init(config: ReviewConfig, args: argparse.Namespace) -> int:
    get_database(config.database_path)
    print(f"Initialized {config.database_path}")
    return 0


async def _run_sweeps(config: ReviewConfig, actor_id: str) -> LifecycleMetrics:
    service = ProtocolReviewService(DataAccessLayer(get_store(config.database_path)), config)
    await service.expire_overdue()
    await service.archive_terminal(actor_id)
    return service.metrics


def cmd_sweep(config: ReviewConfig, args: argparse.Namespace) -> int:
    metrics = asyncio.run(_run_sweeps(config, args.actor))
    print(f"Expired: {metrics.expired}")
    print(f"Archived: {metrics.archived}")
    return 0


def cmd_report(config: ReviewConfig, args: argparse.Namespace) -> int:
    checker = LifecycleQualityChecker(get_database(config.database_path), args.stalled_days)
    metrics = LifecycleMetrics()
    metrics.status_counts = checker.status_distribution()
    metrics.completed_at = datetime.now(timezone.utc)

    reporter = StatusReporter()
    report = reporter.generate_report(metrics, checker.run_all_checks())
    path = reporter.save_report(report, Path(args.output_dir))
    print(f"Report written to {path}")
    return 0


def cmd_check(config: ReviewConfig, args: argparse.Namespace) -> int:
    checker = LifecycleQualityChecker(get_database(config.database_path), args.stalled_days)
    results = checker.run_all_checks()
    rows = [["✓" if r.passed else "✗", r.check_name, r.message] for r in results]
    print(tabulate(rows, headers=["Status", "Check", "Details"], tablefmt="github"))
    return 0 if all(r.passed for r in results) else 1


async def _watch(config: ReviewConfig, protocol_id: str, limit: Optional[int]) -> int:
    hub = SyncHub.from_config(DataAccessLayer(get_store(config.database_path)), config)
    done = asyncio.Event()
    seen = 0

    def count():
        nonlocal seen
        seen += 1
        if limit is not None and seen >= limit:
            done.set()

    def on_change(protocol):
        print(f"{protocol.id} v{protocol.version} {protocol.status.value}", flush=True)
        count()

    def on_error(notification: SyncNotification):
        print(f"{notification.protocol_id} {notification.code}: {notification.error.message}",
              file=sys.stderr, flush=True)
        count()

    subscription = await hub.subscribe(protocol_id, on_change, on_error)
    try:
        await done.wait()
    finally:
        subscription.unsubscribe()
        hub.close()
    return seen


def cmd_watch(config: ReviewConfig, args: argparse.Namespace) -> int:
    try:
        asyncio.run(_watch(config, args.protocol_id, args.limit))
    except KeyboardInterrupt:
        logger.info(f"Stopped watching {args.protocol_id}")
    return 0


COMMANDS = {
    "init": cmd_init,
    "sweep": cmd_sweep,
    "report": cmd_report,
    "check": cmd_check,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rec_review",
        description="Protocol review lifecycle engine"
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the database schema")

    sweep = subparsers.add_parser("sweep", help="Expire and archive protocols")
    sweep.add_argument("--actor", required=True, help="Active chairperson authorizing the archive sweep")

    for name, help_text in (("report", "Write a Markdown report"), ("check", "Run quality checks")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--stalled-days", type=int, default=90,
                         help="Age after which a non-terminal protocol is stalled")
        if name == "report":
            sub.add_argument("--output-dir", default="reports", help="Directory for reports")

    watch = subparsers.add_parser("watch", help="Follow a protocol's confirmed versions")
    watch.add_argument("protocol_id", help="Protocol to follow")
    watch.add_argument("--limit", type=int, default=None,
                       help="Stop after this many notifications (default: run until interrupted)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    _configure_logging(config.log_level)
    try:
        return COMMANDS[args.command](config, args)
    except ReviewEngineError as e:
        logger.error(f"{args.command} failed [{e.code}]: {e.message}")
        return 1
    finally:
        reset_store()


if __name__ == "__main__":
    sys.exit(main())
