# filename: runner.py

import argparse
import json
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .auth import INTERNAL_ACTOR, is_internal_request
from .campaign_scheduler import CampaignScheduler
from .config import load_root_env, load_settings
from .exceptions import CampaignDeliveryError
from .lib.supabase_client import get_store

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='campaign-delivery',
                                     description='Deliver email campaigns in rate-limited batches')
    parser.add_argument('--secret', help='cron secret; checked against CRON_SECRET when given')
    parser.add_argument('--json', action='store_true', help='print results as JSON')
    parser.add_argument('-v', '--verbose', action='store_true')
    commands = parser.add_subparsers(dest='command', required=True)

    due = commands.add_parser('process-due', help='process pending batches that are due')
    due.add_argument('--limit', type=int, default=10)
    due.add_argument('--max', dest='max_to_send', type=int, default=50)

    commands.add_parser('start-due', help='start scheduled and recurring campaigns that are due')

    batch = commands.add_parser('process-batch', help='process a single batch')
    batch.add_argument('batch_id')
    batch.add_argument('--max', dest='max_to_send', type=int, default=50)

    commands.add_parser('quota', help='show the hourly send quota')
    commands.add_parser('sweep-stuck', help="fail recipients stuck in 'sending'")

    tick = commands.add_parser('tick', help='start-due, process-due and sweep-stuck in one go')
    tick.add_argument('--limit', type=int, default=10)
    tick.add_argument('--max', dest='max_to_send', type=int, default=50)
    return parser


def _print_quota(status):
    table = Table(title='Send quota')
    table.add_column('Setting')
    table.add_column('Value', justify='right')
    for key, value in status.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def _print_batches(report):
    table = Table(title=f"Processed {report.processed} batches")
    for column in ('Batch', 'Status', 'Sent', 'Failed', 'Skipped', 'Pending', 'Message'):
        table.add_column(column)
    for result in report.results:
        table.add_row(result.batch_id, str(result.batch_status), str(result.sent), str(result.failed),
                      str(result.skipped), str(result.remaining), result.message)
    console.print(table)
    for error in report.errors:
        console.print(f"[red]Batch {error['batch_id']} failed:[/red] {error['error']}")


def run(args: argparse.Namespace) -> dict:
    store = get_store()
    settings = load_settings(store)
    if args.secret is not None and not is_internal_request({'x-cron-secret': args.secret}, settings):
        raise CampaignDeliveryError("Invalid cron secret")

    scheduler = CampaignScheduler(store, settings=settings)

    if args.command == 'process-due':
        report = scheduler.process_due_batches(limit=args.limit, max_to_send=args.max_to_send)
        if not args.json:
            _print_batches(report)
        return report.to_dict()

    if args.command == 'start-due':
        report = scheduler.start_due_campaigns()
        if not args.json:
            console.print(f"Started {len(report.started)} scheduled and "
                          f"{len(report.recurring)} recurring campaigns")
        return report.to_dict()

    if args.command == 'process-batch':
        result = scheduler.manager.process_batch(INTERNAL_ACTOR, args.batch_id, max_to_send=args.max_to_send)
        if not args.json:
            console.print(f"[bold]{result.message}[/bold]: {result.sent} sent, {result.failed} failed, "
                          f"{result.skipped} skipped, {result.remaining} pending")
        return result.to_dict()

    if args.command == 'quota':
        status = scheduler.manager.get_quota_status(INTERNAL_ACTOR)
        if not args.json:
            _print_quota(status)
        return status.to_dict()

    if args.command == 'sweep-stuck':
        swept = scheduler.sweep_stuck_recipients()
        if not args.json:
            console.print(f"Marked {swept} stuck recipients as failed")
        return {'swept': swept}

    if args.command == 'tick':
        report = scheduler.tick(limit=args.limit, max_to_send=args.max_to_send)
        if not args.json:
            console.print(f"Campaigns: {report['campaigns']}")
            console.print(f"Batches processed: {report['batches']['processed']}, swept: {report['swept']}")
        return report

    raise ValueError(f"Unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    load_root_env()
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        result = run(args)
    except CampaignDeliveryError as e:
        logger.error(f"{type(e).__name__}: {str(e)}")
        return 1
    if args.json:
        print(json.dumps(result, default=str, indent=2))
    return 0


if __name__ == '__main__':
    sys.exit(main())
