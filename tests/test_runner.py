"""Tests for the sync runner against a mocked upstream and in-memory storage."""
import asyncio
import json

import httpx
import pytest
from vendsync.config import config
from vendsync.errors import StorageError, SyncCancelled, UpstreamError
from vendsync.fetch.client import VendLiveClient
from vendsync.jobs.metrics_exporter import MetricsExporter
from vendsync.jobs.run_control import RunControl
from vendsync.jobs.runner import SyncRunner
from vendsync.main import parse_args
from vendsync.store.dev_storage import DevStorage
from vendsync.store.memory import MemoryStorage
from vendsync.store.state import StateDB

BASE = "https://vendlive.test"

SALES = [
    {
        "id": 101,
        "createdAt": "2024-03-05T10:00:00Z",
        "charged": "Yes",
        "machine": {"id": 7, "friendlyName": "M7"},
        "location": {"venue": {"id": 1, "name": "Gare du Nord"}},
        "productSales": [
            {"id": 1, "vendStatus": "Success", "totalPaid": "4.50",
             "product": {"name": "Salade", "category": {"name": "Salades"}}},
            {"id": 2, "vendStatus": "Success", "totalPaid": "2.00",
             "product": {"name": "Eau", "category": {"name": "Boissons"}}},
        ],
    },
    {
        "id": 102,
        "createdAt": "2024-03-05T11:00:00Z",
        "charged": "Yes",
        "machine": {"id": 8, "friendlyName": "M8"},
        "location": {"venue": {"id": 2, "name": "Opéra"}},
        "productSales": [
            {"id": 3, "vendStatus": "Success", "totalPaid": "6.00", "product": {"name": "Wrap"}},
        ],
    },
    {"id": 103, "createdAt": "2024-03-05T12:00:00Z", "charged": "No", "productSales": []},
]


def upstream(requests: list, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if status != 200:
            return httpx.Response(status)
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json={"results": [], "next": None, "count": 3})
        return httpx.Response(
            200,
            json={"results": SALES, "next": f"{BASE}/api/2.0/accounts/42/order-sales/?page=2", "count": 3},
        )

    return handler


def make_runner(tmp_path, storage, requests, status=200, **kwargs) -> SyncRunner:
    client = VendLiveClient(
        base_url=BASE, token="t", transport=httpx.MockTransport(upstream(requests, status))
    )
    kwargs.setdefault("state_db", StateDB(tmp_path / "state.db"))
    return SyncRunner(
        client,
        storage,
        page_delay=0,
        upsert_pause=0,
        account_id="42",
        metrics_exporter=MetricsExporter("test", tmp_path / "metrics.jsonl"),
        **kwargs,
    )


def test_incremental_sync_writes_both_tables(tmp_path):
    """Test line items and order summaries from one page."""
    storage = MemoryStorage()
    requests = []
    runner = make_runner(tmp_path, storage, requests, start_date="2024-03-01", end_date="2024-03-05")
    totals = asyncio.run(runner.run())

    assert totals.pages == 1
    assert totals.sales_seen == 3
    assert totals.line_items == 3
    assert totals.order_summaries == 3
    assert totals.skipped_empty == 1
    assert totals.placeholders == 1

    orders = {r["vendlive_id"]: r for r in storage.rows("orders")}
    assert set(orders) == {"101_1_0", "101_2_1", "102_3_0"}
    assert orders["102_3_0"]["is_placeholder"] is True
    sales = {r["vendlive_id"]: r for r in storage.rows("sales")}
    assert sales["101"]["total_ttc"] == 6.5
    assert sales["103"]["status"] == "failed"

    first = requests[0]
    assert first.url.path == "/api/2.0/accounts/42/order-sales/"
    assert first.url.params["startDate"] == "2024-03-01"
    assert first.url.params["endDate"] == "2024-03-05"
    assert first.url.params["pageSize"] == "100"
    assert len(requests) == 2


def test_rerun_is_idempotent(tmp_path):
    """Test that syncing the same window twice leaves the same rows."""
    storage = MemoryStorage()
    asyncio.run(make_runner(tmp_path, storage, [], start_date="2024-03-05", end_date="2024-03-05").run())
    once = sorted(storage.rows("orders"), key=lambda r: r["vendlive_id"])
    asyncio.run(make_runner(tmp_path, storage, [], start_date="2024-03-05", end_date="2024-03-05").run())
    twice = sorted(storage.rows("orders"), key=lambda r: r["vendlive_id"])
    assert [r["vendlive_id"] for r in once] == [r["vendlive_id"] for r in twice]
    assert len(storage.rows("sales")) == 3


def test_full_sync_wipes_tables_first(tmp_path):
    """Test that full mode deletes stale rows before reinserting."""
    storage = MemoryStorage()
    asyncio.run(storage.upsert("orders", [{"vendlive_id": "stale_1"}, {"vendlive_id": "stale_2"}], "vendlive_id"))
    asyncio.run(storage.upsert("sales", [{"vendlive_id": "stale"}], "vendlive_id"))

    runner = make_runner(tmp_path, storage, [], mode="full", start_date="2024-03-01", end_date="2024-03-05")
    totals = asyncio.run(runner.run())

    assert totals.deleted_orders == 2
    assert totals.deleted_sales == 1
    assert "stale_1" not in {r["vendlive_id"] for r in storage.rows("orders")}
    assert len(storage.rows("orders")) == 3
    assert len(storage.rows("sales")) == 3


def test_incremental_resumes_from_last_success(tmp_path):
    """Test that the window starts where the last successful run ended."""
    storage = MemoryStorage()
    asyncio.run(make_runner(tmp_path, storage, [], start_date="2024-03-01", end_date="2024-03-05").run())

    requests = []
    asyncio.run(make_runner(tmp_path, storage, requests, end_date="2024-03-10").run())
    assert requests[0].url.params["startDate"] == "2024-03-05"
    assert requests[0].url.params["endDate"] == "2024-03-10"


def test_upstream_failure_aborts_and_is_journaled(tmp_path):
    """Test that a non-2xx page fails the run and records it."""
    storage = MemoryStorage()
    state_db = StateDB(tmp_path / "state.db")
    runner = make_runner(
        tmp_path, storage, [], status=500, state_db=state_db, start_date="2024-03-01", end_date="2024-03-05"
    )
    with pytest.raises(UpstreamError):
        asyncio.run(runner.run())
    assert storage.rows("orders") == []
    assert asyncio.run(state_db.get_stats()) == {"failed": 1}


def test_cancelled_run_stops_and_is_journaled(tmp_path):
    """Test cooperative cancellation between pages."""
    storage = MemoryStorage()
    state_db = StateDB(tmp_path / "state.db")
    control = RunControl()
    control.cancel("maintenance window")
    runner = make_runner(
        tmp_path, storage, [], state_db=state_db, run_control=control,
        start_date="2024-03-01", end_date="2024-03-05",
    )
    with pytest.raises(SyncCancelled):
        asyncio.run(runner.run())
    assert storage.rows("orders") == []
    assert asyncio.run(state_db.get_stats()) == {"cancelled": 1}


def test_refresh_daily_stats(tmp_path):
    """Test per-machine daily stats after the pages."""
    storage = MemoryStorage()
    runner = make_runner(
        tmp_path, storage, [], refresh_daily_stats=True, start_date="2024-03-05", end_date="2024-03-05"
    )
    totals = asyncio.run(runner.run())
    assert totals.daily_stats == 2
    rows = {r["machine_id"]: r for r in storage.rows("daily_stats")}
    assert rows[7]["date"] == "2024-03-05"
    assert rows[7]["total_revenue_ttc"] == 6.5
    assert rows[7]["successful_orders"] == 1
    assert rows[8]["total_revenue_ttc"] == 6.0


def test_metrics_exported(tmp_path):
    """Test that the run summary is appended to the metrics file."""
    runner = make_runner(tmp_path, MemoryStorage(), [], start_date="2024-03-05", end_date="2024-03-05")
    asyncio.run(runner.run())
    lines = (tmp_path / "metrics.jsonl").read_text().splitlines()
    entry = json.loads(lines[-1])
    assert entry["status"] == "success"
    assert entry["line_items"] == 3


def test_invalid_window_rejected(tmp_path):
    """Test that start after end is refused."""
    runner = make_runner(tmp_path, MemoryStorage(), [], start_date="2024-03-10", end_date="2024-03-05")
    with pytest.raises(ValueError):
        asyncio.run(runner.run())


def test_invalid_mode_rejected(tmp_path):
    """Test constructor validation."""
    with pytest.raises(ValueError):
        make_runner(tmp_path, MemoryStorage(), [], mode="partial")


def test_dev_storage_writes_page(tmp_path):
    """Test DEV dumps of normalized rows."""
    dev = DevStorage("run-1", base_dir=tmp_path)
    page_dir = dev.save_page(1, 2, [{"vendlive_id": "a", "raw_data": "{}", "is_placeholder": True}], [])
    summary = json.loads((page_dir / "summary.json").read_text())
    assert summary == {"page": 1, "raw_sales": 2, "line_items": 1, "order_summaries": 0, "placeholders": 1}
    orders = json.loads((page_dir / "orders.json").read_text())
    assert orders == [{"vendlive_id": "a", "is_placeholder": True}]


def test_cli_arguments():
    """Test CLI parsing."""
    args = parse_args(["--mode", "full", "--start-date", "2024-01-01", "--dry-run", "--unknown-products", "skip"])
    assert args.mode == "full"
    assert args.start_date == "2024-01-01"
    assert args.dry_run is True
    assert args.unknown_products == "skip"
    assert args.refresh_daily_stats is False
    with pytest.raises(SystemExit):
        parse_args(["--mode", "partial"])


def test_full_sync_refetches_history_it_wiped(tmp_path, monkeypatch):
    """Without explicit dates, a full run starts at the configured history start, not SYNC_DAYS ago."""
    monkeypatch.setattr(config, "SYNC_START_DATE", None)
    monkeypatch.setattr(config, "FULL_SYNC_START_DATE", "2024-01-01")
    monkeypatch.setattr(config, "SYNC_DAYS", 1)
    storage = MemoryStorage()
    old = [{"vendlive_id": f"old_{day}", "created_at": f"2024-01-0{day}T09:00:00+00:00"} for day in range(1, 6)]
    asyncio.run(storage.upsert("orders", old, "vendlive_id"))

    requests = []
    totals = asyncio.run(make_runner(tmp_path, storage, requests, mode="full").run())
    assert totals.deleted_orders == 5
    assert requests[0].url.params["startDate"] == "2024-01-01"


def test_incremental_default_window_uses_sync_days(tmp_path, monkeypatch):
    """Test the look-back when there is no start date and no prior run."""
    monkeypatch.setattr(config, "SYNC_START_DATE", None)
    monkeypatch.setattr(config, "SYNC_DAYS", 3)
    runner = make_runner(tmp_path, MemoryStorage(), [], end_date="2024-03-10")
    start, end = asyncio.run(runner.resolve_window())
    assert (start.isoformat(), end.isoformat()) == ("2024-03-07", "2024-03-10")


def test_run_is_logged_to_storage(tmp_path):
    """Test the shared sync log row for a successful and a failed run."""
    storage = MemoryStorage()
    ok = make_runner(tmp_path, storage, [], start_date="2024-03-05", end_date="2024-03-05")
    asyncio.run(ok.run())
    with pytest.raises(UpstreamError):
        asyncio.run(make_runner(tmp_path, storage, [], status=502, start_date="2024-03-05").run())

    logs = {r["status"]: r for r in storage.rows("sync_logs")}
    assert set(logs) == {"success", "failed"}
    assert logs["success"]["run_id"] == ok.run_id
    assert logs["success"]["sync_type"] == "vendlive_orders"
    assert logs["success"]["records_synced"] == 3
    assert logs["success"]["metadata"]["start_date"] == "2024-03-05"
    assert "502" in logs["failed"]["error_message"]


class SyncLogDown(MemoryStorage):
    async def upsert(self, table, rows, on_conflict):
        if table == "sync_logs":
            raise StorageError("relation sync_logs does not exist", table=table)
        return await super().upsert(table, rows, on_conflict)


def test_sync_log_failure_does_not_fail_run(tmp_path):
    """Test that an unwritable sync log leaves the run successful."""
    storage = SyncLogDown()
    totals = asyncio.run(make_runner(tmp_path, storage, [], start_date="2024-03-05", end_date="2024-03-05").run())
    assert totals.line_items == 3
    assert storage.rows("sync_logs") == []
