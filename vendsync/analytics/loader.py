"""Read persisted records back from storage for aggregation."""
import logging
from typing import Optional, Union

from pydantic import ValidationError

from vendsync.analytics.periods import DateRange
from vendsync.config import config
from vendsync.parse.models import NormalizedLineItem, OrderSummary
from vendsync.store.storage import Filter, Storage

logger = logging.getLogger(__name__)

Record = Union[NormalizedLineItem, OrderSummary]


def model_for(table: str) -> type[Record]:
    if table == config.SALES_TABLE:
        return OrderSummary
    return NormalizedLineItem


async def load_records(
    storage: Storage,
    table: str,
    date_range: DateRange,
    status: Optional[str] = None,
    page_size: int = 1000,
) -> list[Record]:
    """All rows of ``table`` created within the range, newest first.

    Rows that no longer validate are logged and left out.
    """
    model = model_for(table)
    filters = [
        Filter("created_at", "gte", date_range.start_at.isoformat()),
        Filter("created_at", "lte", date_range.end_at.isoformat()),
    ]
    if status:
        filters.append(Filter("status", "eq", status))

    records: list[Record] = []
    offset = 0
    while True:
        rows = await storage.query(
            table, filters, order_by="created_at", descending=True, offset=offset, limit=page_size
        )
        for row in rows:
            try:
                records.append(model.model_validate(row))
            except ValidationError as e:
                logger.warning(f"[{table}] Skipping unreadable row {row.get('vendlive_id')}: {e}")
        if len(rows) < page_size:
            break
        offset += page_size

    logger.debug(f"[{table}] Loaded {len(records)} rows for {date_range.start}..{date_range.end}")
    return records
