"""Cursor pagination over VendLive listing endpoints."""
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from vendsync.fetch.client import VendLiveClient

logger = logging.getLogger(__name__)

# Absolute bound when no page cap is configured
HARD_PAGE_CEILING = 10_000


@dataclass
class Page:
    """One decoded listing page."""

    number: int
    results: list[dict[str, Any]] = field(default_factory=list)
    next: Optional[str] = None
    count: Optional[int] = None


class Paginator:
    """Walks ``{results, next, count}`` pages until exhaustion or the page cap.

    Stops when the upstream reports no next page, when a page comes back empty (that
    page is fetched but not yielded), or after ``max_pages`` fetches. A ``max_pages``
    of 0 or None means unbounded up to ``HARD_PAGE_CEILING``. Fetch errors propagate.
    """

    def __init__(
        self,
        client: VendLiveClient,
        max_pages: Optional[int] = None,
        page_delay: float = 0.0,
    ):
        self.client = client
        self.max_pages = max_pages if max_pages and max_pages > 0 else HARD_PAGE_CEILING
        self.max_pages = min(self.max_pages, HARD_PAGE_CEILING)
        self.page_delay = page_delay
        self.pages_fetched = 0

    async def iter_pages(
        self, path: str, params: Optional[dict] = None
    ) -> AsyncIterator[Page]:
        next_url: Optional[str] = path
        next_params = params
        number = 0

        while next_url and number < self.max_pages:
            if number > 0 and self.page_delay:
                await asyncio.sleep(self.page_delay)

            number += 1
            data = await self.client.get_json(next_url, next_params)
            self.pages_fetched += 1

            if not isinstance(data, dict):
                logger.warning(f"Page {number}: unexpected payload type {type(data).__name__}, stopping")
                return

            results = data.get("results") or []
            page = Page(
                number=number,
                results=results,
                next=data.get("next"),
                count=data.get("count"),
            )
            logger.debug(f"Page {number}: {len(results)} records (count={page.count})")

            if not results:
                logger.info(f"Page {number} is empty, stopping")
                return

            yield page

            # The cursor URL already carries every query parameter
            next_url = page.next
            next_params = None

        if next_url:
            logger.warning(f"Page cap reached ({self.max_pages}), more pages remain upstream")

    async def collect(
        self, path: str, params: Optional[dict] = None, limit: Optional[int] = None
    ) -> list[dict[str, Any]]:
        """All records across pages, truncated to ``limit`` when given."""
        records: list[dict[str, Any]] = []
        async with aclosing(self.iter_pages(path, params)) as pages:
            async for page in pages:
                records.extend(page.results)
                if limit is not None and len(records) >= limit:
                    break
        return records[:limit] if limit is not None else records
