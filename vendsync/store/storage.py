"""Storage abstraction over the relational backing store.

Components receive a ``Storage`` instance explicitly; ``build_storage`` constructs
the configured backend once at process start.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from vendsync.config import config
from vendsync.errors import StorageError

logger = logging.getLogger(__name__)

FILTER_OPS = ("eq", "neq", "gte", "lte", "in")


@dataclass(frozen=True)
class Filter:
    """Column predicate understood by every backend."""

    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")


class Storage(Protocol):
    """What the upserter, the sync runner and the analytics loader need from a store."""

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> int: ...

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]: ...

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int: ...

    async def delete(self, table: str, filters: Sequence[Filter]) -> int: ...

    async def ping(self) -> bool: ...


_transport_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    reraise=True,
)


class SupabaseStorage:
    """Supabase/PostgREST backend (sync client, driven from a thread pool)."""

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None):
        url = url or config.SUPABASE_URL
        key = key or config.SUPABASE_SERVICE_ROLE
        if not url or not key:
            raise ValueError("Supabase configuration missing")
        self.client: Client = create_client(url, key)

    async def _run(self, table: str, fn, *args) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except APIError as e:
            raise StorageError(f"{e.code}: {e.message}", table=table) from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise StorageError(f"transport failure: {e!r}", table=table) from e

    @staticmethod
    def _apply_filters(builder, filters: Sequence[Filter]):
        for f in filters:
            if f.op == "in":
                builder = builder.in_(f.column, list(f.value))
            else:
                builder = getattr(builder, f.op)(f.column, f.value)
        return builder

    @_transport_retry
    def _upsert_sync(self, table: str, rows: list[dict], on_conflict: str) -> int:
        """Synchronous upsert (called from thread pool)."""
        response = (
            self.client.table(table)
            .upsert(rows, on_conflict=on_conflict, ignore_duplicates=False)
            .execute()
        )
        return len(response.data or [])

    async def upsert(self, table: str, rows: list[dict], on_conflict: str) -> int:
        if not rows:
            return 0
        written = await self._run(table, self._upsert_sync, table, rows, on_conflict)
        logger.debug(f"Upserted {written} rows into {table}")
        return written

    @_transport_retry
    def _query_sync(self, table, filters, order_by, descending, offset, limit) -> list[dict]:
        builder = self._apply_filters(self.client.table(table).select("*"), filters)
        if order_by:
            builder = builder.order(order_by, desc=descending)
        if limit is not None:
            builder = builder.range(offset, offset + limit - 1)
        return builder.execute().data or []

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[dict]:
        return await self._run(
            table, self._query_sync, table, filters, order_by, descending, offset, limit
        )

    @_transport_retry
    def _count_sync(self, table: str, filters: Sequence[Filter]) -> int:
        builder = self.client.table(table).select("*", count="exact", head=True)
        return self._apply_filters(builder, filters).execute().count or 0

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        return await self._run(table, self._count_sync, table, filters)

    def _delete_sync(self, table: str, filters: Sequence[Filter]) -> int:
        builder = self._apply_filters(self.client.table(table).delete(), filters)
        return len(builder.execute().data or [])

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        # PostgREST refuses unfiltered deletes
        if not filters:
            raise ValueError("delete requires at least one filter")
        return await self._run(table, self._delete_sync, table, filters)

    async def ping(self) -> bool:
        """Test Supabase connection."""
        try:
            await self.count(config.SALES_TABLE)
            logger.info("Supabase connection successful")
            return True
        except StorageError as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False


def build_storage(dry_run: bool = False) -> Storage:
    """Configured backend: Supabase normally, in-memory for dry runs."""
    if dry_run:
        from vendsync.store.memory import MemoryStorage

        logger.info("Using in-memory storage (dry run)")
        return MemoryStorage()
    return SupabaseStorage()
