"""
Listing Sync CLI entry point.

Usage:
    python -m modules.listing_sync                  Sync IDX and VOW from the saved cursor
    python -m modules.listing_sync idx              Sync only IDX
    python -m modules.listing_sync vow -100         Sync only VOW, at most 100 properties
    python -m modules.listing_sync incremental      Same as no mode (resume from checkpoint)
    python -m modules.listing_sync --reset          Restart both feeds from SYNC_START_DATE
    python -m modules.listing_sync --status         Show sync state per feed
    python -m modules.listing_sync --history KEY    Show listing history for a ListingKey
    python -m modules.listing_sync --rebuild-history  Rebuild history from stored properties
"""

import argparse
import asyncio
import logging
import re
import signal
import sys
import time
from typing import Optional

from .config import config
from .db import Database
from .exceptions import ListingNotFoundError
from .feed_client import ResoFeedClient
from .geocoding import BackgroundTasks, Geocoder
from .listing_history import get_listing_history, rebuild_listing_history
from .logging_setup import setup_logging
from .models import Cursor, SyncType
from .progress import SyncProgress
from .store import SyncStore
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

LIMIT_TOKEN = re.compile(r'^-(\d+)$')
GEOCODE_DRAIN_TIMEOUT = 30


def parse_targets(tokens: list[str]) -> dict:
    """
    Parse positional tokens: 'idx', 'vow', 'incremental', and '-N' limits.

    Neither feed named means both.
    """
    targets = {'sync_types': [], 'limit': None, 'incremental': False}

    for token in tokens:
        lower = token.lower()
        match = LIMIT_TOKEN.match(lower)
        if lower in ('idx', 'vow'):
            sync_type = SyncType(lower.upper()).value
            if sync_type not in targets['sync_types']:
                targets['sync_types'].append(sync_type)
        elif match:
            targets['limit'] = int(match.group(1))
        elif lower == 'incremental':
            targets['incremental'] = True
        else:
            raise ValueError(f"Unknown argument: {token}")

    if not targets['sync_types']:
        targets['sync_types'] = [SyncType.IDX.value, SyncType.VOW.value]

    return targets


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Listing Sync - RESO feed → local listings')
    parser.add_argument('targets', nargs='*',
                        help="'idx', 'vow', 'incremental', and/or a limit like -100")
    parser.add_argument('--reset', action='store_true',
                        help='Discard saved cursors and restart from SYNC_START_DATE')
    parser.add_argument('--limit', type=int, help='Max properties per feed this run')
    parser.add_argument('--status', action='store_true', help='Show sync state and exit')
    parser.add_argument('--history', metavar='LISTING_KEY', help='Show listing history and exit')
    parser.add_argument('--rebuild-history', action='store_true',
                        help='Rebuild listing history from stored properties and exit')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def _install_signal_handlers(engine: SyncEngine):
    """
    SIGINT/SIGTERM stop the sync after the current batch. A second signal
    interrupts immediately; the next run resumes from the last checkpoint.
    """
    def shutdown_handler(signum, frame):
        if engine.shutdown_requested:
            logger.warning(f"Received signal {signum} again, interrupting now")
            raise KeyboardInterrupt
        logger.info(f"Received signal {signum}, shutting down...")
        engine.request_shutdown()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    return shutdown_handler


# =============================================================================
# Commands
# =============================================================================

def cmd_status(db: Database) -> int:
    """Show current sync status."""
    print("=" * 60)
    print("Listing Sync Status")
    print("=" * 60)

    print(f"\n  Environment: {config.LISTING_SYNC_ENV}")
    print(f"  Database: {db.db_path}")
    print(f"  Properties stored: {db.count_properties():,}")

    print("\n[Sync State]")
    states = db.get_all_sync_states()
    if not states:
        print("  No sync has run yet")
    for state in states:
        print(f"  {state.sync_type}: {state.status.value}")
        print(f"    Cursor: {state.cursor}")
        print(f"    Processed (last run): {state.total_processed:,}")
        print(f"    Last started: {state.last_run_started or 'Never'}")
        print(f"    Last completed: {state.last_run_completed or 'Never'}")
        if state.last_error:
            print(f"    Last error: {state.last_error}")

    print("\n[Recent Runs]")
    logs = db.get_recent_logs(limit=10)
    if logs:
        for log in logs:
            status_icon = "✓" if log['status'] == 'completed' else "✗"
            print(f"  {status_icon} {log['timestamp'][:16]} | {log['sync_type']:4} | "
                  f"{log['processed']:,} properties")
    else:
        print("  No sync runs recorded yet")

    return 0


def cmd_history(store: SyncStore, listing_key: str) -> int:
    """Print the listing history of a stored listing."""
    try:
        history = asyncio.run(get_listing_history(store, listing_key, is_listing_key=True))
    except ListingNotFoundError as e:
        print(f"✗ {e}")
        return 1

    print("=" * 60)
    print(f"Listing History: {history['property_address']}")
    print("=" * 60)

    print("\n[Listing Periods]")
    for period in history['listing_history']:
        end = period.date_end or 'present'
        print(f"  {period.listing_key}: {period.status:10} {period.date_start[:10]} → {end[:10]} "
              f"| listed {period.initial_price}"
              + (f" | sold {period.sold_price}" if period.sold_price else ""))

    print(f"\n[Price Changes - {history['current_listing_key']}]")
    if not history['price_changes']:
        print("  None recorded")
    for change in history['price_changes']:
        percent = f" ({change.change_percent:+.2f}%)" if change.change_percent is not None else ""
        print(f"  {change.change_date[:10]} {change.event_type:16} {change.price}{percent}")

    return 0


def cmd_rebuild_history(store: SyncStore) -> int:
    """Replay stored properties through the history deriver."""
    stats = asyncio.run(rebuild_listing_history(store))
    print(f"Processed: {stats['processed']:,}")
    print(f"Skipped:   {stats['skipped']:,}")
    print(f"Errors:    {stats['errors']:,}")
    return 0 if stats['errors'] == 0 else 1


async def run_syncs(
    engine: SyncEngine,
    client: ResoFeedClient,
    store: SyncStore,
    sync_types: list[str],
    limit: Optional[int],
    reset: bool,
    show_progress: bool = True,
) -> dict:
    """Run each requested feed in turn; returns before/after property counts."""
    print(">>> Fetching total counts...\n")
    epoch = Cursor(config.SYNC_START_DATE, '0')
    total = 0
    for sync_type in sync_types:
        count = await client.get_total_count(epoch, sync_type)
        total += count
        print(f"{sync_type} Properties: {count:,}")
    print(f"TOTAL Properties: {total:,}")

    existing = await store.count_properties()
    print(f"\nAlready in database: {existing:,}")
    print(f"Remaining to sync: {max(total - existing, 0):,}\n")

    results = []
    for sync_type in sync_types:
        if engine.shutdown_requested:
            break
        print(f">>> Starting {sync_type} Sync...\n")
        progress = SyncProgress(sync_type, enabled=show_progress)
        results.append(await engine.run_sync(sync_type, limit=limit, reset=reset, progress=progress))
        print(f"\n>>> {sync_type} Sync Complete!\n")

    await engine.background.drain(timeout=GEOCODE_DRAIN_TIMEOUT)

    return {
        'existing': existing,
        'final': await store.count_properties(),
        'results': results,
    }


async def _sync_main(store: SyncStore, targets: dict, args) -> dict:
    geocoder = Geocoder(store) if config.geocoding_enabled() else None
    async with ResoFeedClient() as client:
        engine = SyncEngine(client, store, geocoder=geocoder, background=BackgroundTasks())
        _install_signal_handlers(engine)
        try:
            return await run_syncs(engine, client, store, targets['sync_types'],
                                   targets['limit'], args.reset, not args.no_progress)
        finally:
            if geocoder is not None:
                await geocoder.aclose()


def cmd_sync(store: SyncStore, targets: dict, args) -> int:
    """Run the requested syncs and print a summary."""
    errors = config.validate(targets['sync_types'])
    if errors:
        print("\n[CONFIG ERRORS]")
        for err in errors:
            print(f"  - {err}")
        return 1

    print("=" * 40)
    print("Listing Sync Service")
    print("=" * 40)
    print(f"Mode: {'RESET' if args.reset else 'INCREMENTAL'}")
    print(f"Syncing: {' + '.join(targets['sync_types'])}")
    print(f"Limit: {targets['limit']:,}" if targets['limit'] else "Limit: None (complete sync)")
    print("=" * 40 + "\n")

    started = time.monotonic()
    try:
        summary = asyncio.run(_sync_main(store, targets, args))
    except KeyboardInterrupt:
        print("\nSYNC INTERRUPTED")
        print("Next run resumes from the last checkpoint")
        return 130
    except Exception as e:
        logger.debug("Sync failed", exc_info=True)
        print("\nSYNC FAILED")
        print(str(e))
        return 1

    minutes = (time.monotonic() - started) / 60
    print("=" * 40)
    print("SYNC COMPLETE")
    print("=" * 40)
    print(f"Total Records in Database: {summary['final']:,}")
    print(f"Records Added This Run: {summary['final'] - summary['existing']:,}")
    for result in summary['results']:
        print(f"{result.sync_type}: {result.processed:,} processed ({result.stopped_reason})")
    print(f"Total Time: {minutes:.2f} minutes")
    print("=" * 40)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        targets = parse_targets(args.targets)
    except ValueError as e:
        parser.error(str(e))

    if args.limit is not None:
        targets['limit'] = args.limit

    setup_logging('DEBUG' if args.verbose else config.LOG_LEVEL, config.LOG_FILE or None)

    db = Database()
    store = SyncStore(db)

    if args.status:
        return cmd_status(db)
    if args.history:
        return cmd_history(store, args.history)
    if args.rebuild_history:
        return cmd_rebuild_history(store)
    return cmd_sync(store, targets, args)


if __name__ == '__main__':
    sys.exit(main())
