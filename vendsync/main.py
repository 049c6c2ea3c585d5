"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from typing import Optional

from vendsync.config import config, Config
from vendsync.errors import SyncCancelled
from vendsync.fetch.client import VendLiveClient
from vendsync.jobs.run_control import RunControl
from vendsync.jobs.runner import MODE_FULL, MODE_INCREMENTAL, SyncRunner
from vendsync.logging_conf import setup_logging
from vendsync.store.storage import build_storage

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="VendLive sales sync")

    # Window
    parser.add_argument(
        "--mode",
        choices=[MODE_INCREMENTAL, MODE_FULL],
        default=config.SYNC_MODE,
        help="incremental upserts, full wipes both tables first (default: %(default)s)",
    )
    parser.add_argument(
        "--start-date",
        default=None,
        help="First day to sync, YYYY-MM-DD (default: end of last successful run)",
    )
    parser.add_argument(
        "--end-date",
        default=None,
        help="Last day to sync, YYYY-MM-DD (default: today, UTC)",
    )

    # Paging and batching
    parser.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help=f"Stop after N upstream pages, 0 = unbounded (default: {config.MAX_PAGES})",
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help=f"Upstream page size (default: {config.PAGE_SIZE})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Rows per upsert sub-batch (default: {config.UPSERT_BATCH_SIZE})",
    )

    # Mode flags
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run: write to in-memory storage, nothing reaches Supabase",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Development mode (verbose logs, normalized pages saved under data/dev/)",
    )
    parser.add_argument(
        "--refresh-daily-stats",
        action="store_true",
        help="Recompute daily_stats for every day the run touched",
    )

    # Run control
    parser.add_argument(
        "--stop-after-minutes",
        type=float,
        default=None,
        help="Cancel the run after M minutes",
    )

    # Normalization
    parser.add_argument(
        "--unknown-products",
        choices=["placeholder", "skip"],
        default=None,
        help=f"Lines without product name/category (default: {config.UNKNOWN_PRODUCT_POLICY})",
    )
    parser.add_argument(
        "--id-mode",
        choices=["stable", "run_scoped"],
        default=None,
        help=f"Line key derivation (default: {config.UNIQUE_ID_MODE})",
    )

    return parser.parse_args(argv)


async def run_sync(args: argparse.Namespace) -> None:
    storage = build_storage(dry_run=args.dry_run)
    run_control = RunControl(stop_after_minutes=args.stop_after_minutes)

    async with VendLiveClient.for_sync() as client:
        runner = SyncRunner(
            client,
            storage,
            mode=args.mode,
            start_date=args.start_date,
            end_date=args.end_date,
            page_size=args.page_size,
            max_pages=args.max_pages,
            batch_size=args.batch_size,
            unknown_products=args.unknown_products,
            id_mode=args.id_mode,
            refresh_daily_stats=args.refresh_daily_stats,
            dev_mode=args.dev,
            run_control=run_control,
        )
        await runner.run()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    setup_logging()
    args = parse_args(argv)

    if args.dev:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        Config.validate(require_supabase=not args.dry_run)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.dry_run:
        logger.info("DRY-RUN mode: Supabase writes disabled")

    logger.info("=" * 60)
    logger.info("VendLive Sync Starting")
    logger.info(f"Mode: {args.mode}")
    logger.info(f"Window: {args.start_date or 'auto'} - {args.end_date or 'today'}")
    logger.info(f"Page size: {args.page_size or config.PAGE_SIZE}")
    logger.info(f"Batch size: {args.batch_size or config.UPSERT_BATCH_SIZE}")
    logger.info(f"Unknown products: {args.unknown_products or config.UNKNOWN_PRODUCT_POLICY}")
    logger.info(f"Dry-run: {args.dry_run}")
    logger.info("=" * 60)

    try:
        asyncio.run(run_sync(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 1
    except SyncCancelled as e:
        logger.error(f"Sync cancelled: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
