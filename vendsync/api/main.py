"""FastAPI proxy in front of the VendLive API, plus stats read from storage."""
import logging
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vendsync.analytics.aggregation import (
    PeriodAggregate,
    bottom_venues,
    period_stats,
    product_stats,
    top_venues,
)
from vendsync.analytics.loader import load_records
from vendsync.analytics.periods import DateRange, previous_period, resolve_period
from vendsync.config import Config, config
from vendsync.errors import UpstreamError
from vendsync.fetch.client import VendLiveClient
from vendsync.fetch.endpoints import machines_path, passthrough_path, sales_path
from vendsync.fetch.paginator import Paginator
from vendsync.logging_conf import setup_logging
from vendsync.store.storage import Storage, build_storage

logger = logging.getLogger(__name__)

MACHINES_MAX_PAGES = 50
SALES_MAX_PAGES = 100
SALES_MAX_LIMIT = 10_000


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def _aggregate_payload(agg: PeriodAggregate) -> dict:
    return {
        "start_date": agg.date_range.start.isoformat(),
        "end_date": agg.date_range.end.isoformat(),
        "total_revenue": agg.total_revenue,
        "order_count": agg.order_count,
        "active_venues": agg.active_venues,
    }


def _venue_payload(venue) -> dict:
    return {
        "venue_id": venue.venue_id,
        "venue_name": venue.venue_name,
        "revenue": venue.revenue,
        "order_count": venue.order_count,
        "previous_revenue": venue.previous_revenue,
        "revenue_growth": venue.revenue_growth,
        "orders_growth": venue.orders_growth,
    }


def create_app(
    client_factory: Optional[Callable[[], VendLiveClient]] = None,
    storage: Optional[Storage] = None,
) -> FastAPI:
    """Build the API. Tests inject a client factory and an in-memory storage."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.storage is None and config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE:
            app.state.storage = build_storage()
        logger.info(f"Backend started on port {config.PORT}, frontend allowed: {config.FRONTEND_URL}")
        logger.info(f"VendLive token: {'configured' if config.VENDLIVE_TOKEN else 'missing'}")
        yield

    app = FastAPI(title="Shape Eat VendLive Backend", version=config.BACKEND_VERSION, lifespan=lifespan)
    app.state.client_factory = client_factory or VendLiveClient.for_proxy
    app.state.storage = storage

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        elapsed_ms = (time.time() - start) * 1000
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            logger.warning(f"Route not found: {request.method} {request.url.path}")
            return error_response(
                404, "Endpoint not found", path=str(request.url.path), method=request.method
            )
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def server_error(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        content = {
            "success": False,
            "error": "Internal server error",
            "message": str(exc),
            "timestamp": now_iso(),
        }
        if not Config.is_production():
            content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=content)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        store = app.state.storage
        return {
            "status": "OK",
            "timestamp": now_iso(),
            "vendlive_configured": bool(config.VENDLIVE_TOKEN),
            "storage_configured": store is not None,
            "storage_connected": await store.ping() if store is not None else False,
            "backend_version": config.BACKEND_VERSION,
        }

    @app.get("/api/machines")
    async def machines():
        """All machines, each enriched with its device's enabled flag."""
        try:
            async with app.state.client_factory() as client:
                paginator = Paginator(client, max_pages=MACHINES_MAX_PAGES)
                records = await paginator.collect(machines_path())
                logger.info(f"Fetched {len(records)} machines in {paginator.pages_fetched} pages")
                enriched = await client.enrich_machines(records)
        except Exception as e:
            logger.error(f"/api/machines failed: {e}")
            return error_response(500, "Failed to fetch machines", message=str(e))
        return {"success": True, "data": enriched, "total": len(enriched)}

    @app.get("/api/sales")
    async def sales(
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        limit: str = "1000",
    ):
        """Raw upstream sales, at most ``limit`` records."""
        try:
            limit_num = int(limit)
        except ValueError:
            limit_num = 0
        if limit_num < 1 or limit_num > SALES_MAX_LIMIT:
            return error_response(400, f"Invalid limit parameter (1-{SALES_MAX_LIMIT})")

        params = {"startDate": startDate, "endDate": endDate, "limit": limit_num}
        try:
            async with app.state.client_factory() as client:
                paginator = Paginator(client, max_pages=SALES_MAX_PAGES)
                records = await paginator.collect(sales_path(), params, limit=limit_num)
        except Exception as e:
            logger.error(f"/api/sales failed: {e}")
            return error_response(500, "Failed to fetch sales", message=str(e))
        logger.info(f"Fetched {len(records)} sales")
        return {"success": True, "data": records, "total": len(records)}

    @app.get("/api/test-connection")
    async def test_connection():
        """Smoke test of upstream reachability."""
        try:
            async with app.state.client_factory() as client:
                data = await client.get_json(machines_path(), {"limit": 1})
        except Exception as e:
            logger.error(f"Connection test failed: {e}")
            return error_response(500, "Connection test failed", message=str(e))
        results = data.get("results") if isinstance(data, dict) else None
        return {
            "success": True,
            "message": "VendLive connection OK",
            "data": {
                "machines_found": len(results or []),
                "api_responsive": True,
                "timestamp": now_iso(),
            },
        }

    @app.get("/api/vendlive/{path:path}")
    async def vendlive_passthrough(path: str, request: Request):
        """Authenticated passthrough to any VendLive GET endpoint."""
        params = dict(request.query_params)
        try:
            async with app.state.client_factory() as client:
                return await client.get_json(passthrough_path(path), params or None)
        except UpstreamError as e:
            return error_response(e.status_code, "VendLive request failed", message=str(e))
        except Exception as e:
            logger.error(f"Passthrough {path} failed: {e}")
            return error_response(500, "VendLive request failed", message=str(e))

    @app.get("/api/stats")
    async def stats(
        period: str = "7days",
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        venueId: Optional[int] = None,
        status: Optional[str] = "completed",
    ):
        """Revenue, orders and venue leaderboards for a period and the one before it."""
        store = app.state.storage
        if store is None:
            return error_response(503, "Storage not configured")
        try:
            current = resolve_period(period, custom_start=startDate, custom_end=endDate)
        except ValueError as e:
            return error_response(400, str(e))

        window = DateRange(previous_period(current).start, current.end)
        records = await load_records(store, config.SALES_TABLE, window, status=status or None)
        result = period_stats(
            records,
            "custom",
            custom_start=current.start,
            custom_end=current.end,
            venue_id=venueId,
        )
        return {
            "success": True,
            "data": {
                "period": period,
                "current": _aggregate_payload(result.current),
                "previous": _aggregate_payload(result.previous),
                "revenue_growth": result.revenue_growth,
                "orders_growth": result.orders_growth,
                "venues": [_venue_payload(v) for v in result.venues],
                "top_venues": [_venue_payload(v) for v in top_venues(result.venues)],
                "bottom_venues": [_venue_payload(v) for v in bottom_venues(result.venues)],
            },
        }

    @app.get("/api/products/top")
    async def top_products(
        period: str = "30days",
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        venueId: Optional[int] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        sortBy: str = "revenue",
        topN: int = 20,
    ):
        """Product leaderboard from line items."""
        store = app.state.storage
        if store is None:
            return error_response(503, "Storage not configured")
        try:
            date_range = resolve_period(period, custom_start=startDate, custom_end=endDate)
            items = await load_records(store, config.ORDERS_TABLE, date_range)
            products = product_stats(
                items, date_range, venue_id=venueId, category=category,
                search=search, sort_by=sortBy, top_n=topN,
            )
        except ValueError as e:
            return error_response(400, str(e))
        data = [
            {
                "product_name": p.product_name,
                "category": p.category,
                "quantity": p.quantity,
                "revenue": p.revenue,
                "average_price": p.average_price,
                "venues": sorted(p.venues),
            }
            for p in products
        ]
        return {"success": True, "data": data, "total": len(data)}

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    setup_logging()
    Config.validate(require_supabase=False)
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)


if __name__ == "__main__":
    run()
