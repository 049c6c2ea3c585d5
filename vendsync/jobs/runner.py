"""Sync job orchestrating fetch, normalize and upsert."""
import logging
import time
import uuid
from contextlib import aclosing
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from vendsync.analytics.aggregation import daily_machine_stats
from vendsync.analytics.loader import load_records
from vendsync.analytics.periods import DateRange
from vendsync.config import config
from vendsync.errors import SyncCancelled
from vendsync.fetch.client import VendLiveClient
from vendsync.fetch.endpoints import order_sales_path
from vendsync.fetch.paginator import Paginator
from vendsync.jobs.metrics import Metrics, SyncTotals
from vendsync.jobs.metrics_exporter import MetricsExporter
from vendsync.jobs.run_control import RunControl
from vendsync.parse.models import NormalizedLineItem
from vendsync.parse.normalizer import Normalizer
from vendsync.store.dev_storage import DevStorage
from vendsync.store.state import StateDB
from vendsync.store.storage import Filter, Storage
from vendsync.store.upserter import BatchUpserter

logger = logging.getLogger(__name__)

MODE_INCREMENTAL = "incremental"
MODE_FULL = "full"

# Matches every row: vendlive_id is never empty
WIPE_FILTER = Filter("vendlive_id", "neq", "")


def parse_date(value: str | date | None) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


class SyncRunner:
    """One sync run over a date window.

    ``full`` mode wipes ``orders`` and ``sales`` before repopulating them. The wipe and
    the reinsert are not atomic: a run that fails midway leaves the tables partially
    filled until the next successful full run.
    """

    def __init__(
        self,
        client: VendLiveClient,
        storage: Storage,
        mode: str = MODE_INCREMENTAL,
        start_date: str | date | None = None,
        end_date: str | date | None = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        page_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
        upsert_pause: Optional[float] = None,
        unknown_products: Optional[str] = None,
        id_mode: Optional[str] = None,
        refresh_daily_stats: bool = False,
        dev_mode: bool = False,
        account_id: Optional[str] = None,
        run_control: Optional[RunControl] = None,
        state_db: Optional[StateDB] = None,
        metrics_exporter: Optional[MetricsExporter] = None,
    ):
        if mode not in (MODE_INCREMENTAL, MODE_FULL):
            raise ValueError(f"Unknown sync mode: {mode}")
        self.client = client
        self.storage = storage
        self.mode = mode
        self.start_date = parse_date(start_date)
        self.end_date = parse_date(end_date)
        self.page_size = page_size or config.PAGE_SIZE
        self.account_id = account_id if account_id is not None else config.VENDLIVE_ACCOUNT_ID
        self.refresh_daily_stats = refresh_daily_stats

        self.run_id = str(uuid.uuid4())
        logger.info(f"Run ID: {self.run_id}")

        self.run_control = run_control or RunControl()
        self.paginator = Paginator(
            client,
            max_pages=config.MAX_PAGES if max_pages is None else max_pages,
            page_delay=config.PAGE_DELAY if page_delay is None else page_delay,
        )
        self.normalizer = Normalizer(
            policy=unknown_products or config.UNKNOWN_PRODUCT_POLICY,
            id_mode=id_mode or config.UNIQUE_ID_MODE,
        )
        self.upserter = BatchUpserter(
            storage, batch_size=batch_size, pause=upsert_pause, run_control=self.run_control
        )
        self.state_db = state_db or StateDB()
        self.metrics = Metrics()
        self.metrics_exporter = metrics_exporter or MetricsExporter(self.run_id)
        self.dev_storage = DevStorage(self.run_id) if dev_mode else None

        self.totals = SyncTotals()
        self.days_touched: set[date] = set()

    async def resolve_window(self) -> tuple[date, date]:
        """Explicit bounds win.

        Full runs otherwise start at ``FULL_SYNC_START_DATE`` since the wipe leaves
        nothing older behind. Incremental runs resume from the last success, else
        look back ``SYNC_DAYS``.
        """
        end = self.end_date or datetime.now(timezone.utc).date()
        start = self.start_date
        if start is None and config.SYNC_START_DATE:
            start = parse_date(config.SYNC_START_DATE)
        if start is None and self.mode == MODE_FULL:
            start = parse_date(config.FULL_SYNC_START_DATE)
        if start is None and self.mode == MODE_INCREMENTAL:
            last_end = await self.state_db.last_successful_end_date()
            if last_end:
                start = parse_date(last_end)
                logger.info(f"Resuming after last successful run (ended {last_end})")
        if start is None:
            start = end - timedelta(days=config.SYNC_DAYS)
        if start > end:
            raise ValueError(f"start date {start} is after end date {end}")
        return start, end

    async def run(self) -> SyncTotals:
        """Run the sync. Any unrecovered error is journaled and re-raised."""
        await self.state_db.initialize()
        start, end = await self.resolve_window()
        await self.state_db.start_run(self.run_id, self.mode, start.isoformat(), end.isoformat())
        logger.info(f"Sync {self.mode} from {start} to {end}")
        started = time.time()

        status = "failed"
        error: Optional[str] = None
        try:
            if self.mode == MODE_FULL:
                await self._wipe()
            await self._sync_pages(start, end)
            if self.refresh_daily_stats:
                await self._refresh_daily_stats()
            status = "success"
            return self.totals
        except SyncCancelled as e:
            status = "cancelled"
            error = str(e)
            logger.warning(f"Sync cancelled: {e}. Partial totals: {self.totals.as_dict()}")
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"Sync failed: {error}")
            raise
        finally:
            self._collect_counters()
            await self.state_db.finish_run(self.run_id, status, self.totals.as_dict(), error)
            elapsed = time.time() - started
            await self.metrics_exporter.export_run(
                status, self.mode, self.totals.as_dict(), elapsed
            )
            await self._log_sync(status, start, end, elapsed, error)
            self._final_report(status)

    async def _log_sync(
        self, status: str, start: date, end: date, elapsed: float, error: Optional[str]
    ) -> None:
        """Record the run in the shared sync log so the dashboard sees sync history.

        A failure here is logged, never raised, so it cannot hide the run's own outcome.
        """
        row = {
            "run_id": self.run_id,
            "sync_type": "vendlive_orders",
            "mode": self.mode,
            "status": status,
            "records_synced": self.totals.line_items,
            "error_message": error[:500] if error else None,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "metadata": {
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "duration_seconds": round(elapsed, 2),
                **self.totals.as_dict(),
            },
        }
        try:
            await self.storage.upsert(config.SYNC_LOGS_TABLE, [row], "run_id")
        except Exception as e:
            logger.warning(f"Could not write sync log to {config.SYNC_LOGS_TABLE}: {e}")

    async def _wipe(self) -> None:
        logger.warning(
            "Full sync: deleting every row of "
            f"{config.ORDERS_TABLE} and {config.SALES_TABLE} (not atomic with the reinsert)"
        )
        self.totals.deleted_orders = await self.storage.delete(config.ORDERS_TABLE, [WIPE_FILTER])
        self.totals.deleted_sales = await self.storage.delete(config.SALES_TABLE, [WIPE_FILTER])
        logger.info(
            f"Deleted {self.totals.deleted_orders} orders and {self.totals.deleted_sales} sales"
        )

    async def _sync_pages(self, start: date, end: date) -> None:
        params = {
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "pageSize": self.page_size,
        }
        async with aclosing(
            self.paginator.iter_pages(order_sales_path(self.account_id), params)
        ) as pages:
            async for page in pages:
                self.run_control.raise_if_stopped()
                await self._process_page(page.number, page.results)

    async def _process_page(self, number: int, sales: list[dict]) -> None:
        line_items = self.normalizer.normalize_page(sales)
        summaries = self.normalizer.summarize_page(sales)
        line_rows = [item.to_row() for item in line_items]
        summary_rows = [summary.to_row() for summary in summaries]

        if self.dev_storage:
            self.dev_storage.save_page(number, len(sales), line_rows, summary_rows)

        lines = await self.upserter.upsert(config.ORDERS_TABLE, line_rows, "vendlive_id")
        orders = await self.upserter.upsert(config.SALES_TABLE, summary_rows, "vendlive_id")

        self.totals.pages += 1
        self.totals.sales_seen += len(sales)
        self.totals.line_items += lines.written
        self.totals.order_summaries += orders.written
        self.days_touched.update(item.created_at.date() for item in line_items)

        self.metrics.increment("pages")
        self.metrics.increment("sales_seen", len(sales))
        self.metrics.increment("line_items", lines.written)
        self.metrics.increment("order_summaries", orders.written)
        self.metrics.report()

    async def _refresh_daily_stats(self) -> None:
        """Recompute per-machine stats for each UTC day this run touched."""
        for day in sorted(self.days_touched):
            self.run_control.raise_if_stopped()
            day_range = DateRange(day, day)
            items = await load_records(self.storage, config.ORDERS_TABLE, day_range)
            rows = daily_machine_stats(
                [item for item in items if isinstance(item, NormalizedLineItem)], day
            )
            result = await self.upserter.upsert(config.DAILY_STATS_TABLE, rows, "date,machine_id")
            self.totals.daily_stats += result.written
            logger.info(f"Daily stats for {day}: {result.written} machines")

    def _collect_counters(self) -> None:
        counters = self.normalizer.counters
        self.totals.skipped_empty = counters["skipped_empty"]
        self.totals.skipped_unknown = counters["skipped_unknown"]
        self.totals.placeholders = counters["placeholders"]

    def _final_report(self, status: str) -> None:
        summary = self.metrics.get_summary()
        run_summary = self.run_control.get_summary()

        logger.info("=" * 60)
        logger.info("FINAL REPORT")
        logger.info(f"Run ID: {self.run_id}")
        logger.info(f"Status: {status}")
        logger.info(f"Mode: {self.mode}")
        logger.info(f"Elapsed: {run_summary['elapsed_minutes']:.2f} minutes")
        logger.info(f"Pages: {self.totals.pages}")
        logger.info(f"Upstream sales: {self.totals.sales_seen}")
        logger.info(f"Line items: {self.totals.line_items}")
        logger.info(f"Order summaries: {self.totals.order_summaries}")
        logger.info(f"Skipped (no products): {self.totals.skipped_empty}")
        logger.info(f"Skipped (unknown product): {self.totals.skipped_unknown}")
        logger.info(f"Placeholders: {self.totals.placeholders}")
        if self.mode == MODE_FULL:
            logger.info(f"Deleted: {self.totals.deleted_orders} orders, {self.totals.deleted_sales} sales")
        if self.refresh_daily_stats:
            logger.info(f"Daily stats rows: {self.totals.daily_stats}")
        logger.info(f"Upstream requests: {self.client.request_count}")
        logger.info(f"Throughput: {summary['rate']:.2f} sales/s")
        logger.info("=" * 60)
