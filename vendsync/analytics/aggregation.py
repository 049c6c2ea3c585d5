"""Period aggregates, growth and leaderboards over persisted sales records.

Records are ``NormalizedLineItem`` or ``OrderSummary`` instances (or their storage
rows). Revenue and order counts only include records accepted by
``counts_toward_revenue``; days are UTC calendar days.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional

from vendsync.analytics.periods import DateRange, previous_period, resolve_period
from vendsync.analytics.validity import counts_toward_revenue, field_value, revenue_amount
from vendsync.parse.models import PLACEHOLDER_CATEGORY, OrderSummary
from vendsync.parse.normalizer import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_VENUE_RANKING = 5
DEFAULT_PRODUCT_RANKING = 20


@dataclass
class VenueStat:
    venue_id: Optional[int]
    venue_name: Optional[str]
    revenue: float = 0.0
    order_count: int = 0


@dataclass
class PeriodAggregate:
    date_range: DateRange
    total_revenue: float = 0.0
    order_count: int = 0
    active_venues: int = 0
    venues: list[VenueStat] = field(default_factory=list)


@dataclass
class VenueComparison:
    venue_id: Optional[int]
    venue_name: Optional[str]
    revenue: float = 0.0
    order_count: int = 0
    previous_revenue: float = 0.0
    previous_order_count: int = 0
    revenue_growth: float = 0.0
    orders_growth: float = 0.0


@dataclass
class PeriodStats:
    current: PeriodAggregate
    previous: PeriodAggregate
    revenue_growth: float
    orders_growth: float
    venues: list[VenueComparison] = field(default_factory=list)


@dataclass
class ProductStat:
    product_name: str
    category: str
    quantity: int = 0
    revenue: float = 0.0
    venues: set[str] = field(default_factory=set)

    @property
    def average_price(self) -> float:
        return round(self.revenue / self.quantity, 2) if self.quantity else 0.0


def record_timestamp(record: Any) -> Optional[datetime]:
    return parse_timestamp(field_value(record, "created_at"))


def _is_summary(record: Any) -> bool:
    if isinstance(record, OrderSummary):
        return True
    return isinstance(record, dict) and "total_ttc" in record


def _order_key(record: Any) -> Any:
    """Line items count once per sale; order summaries once per row."""
    if _is_summary(record):
        return ("summary", id(record))
    return ("sale", field_value(record, "sale_id") or field_value(record, "transaction_id")
            or field_value(record, "unique_id") or field_value(record, "vendlive_id"))


def _categories(record: Any) -> list[str]:
    if _is_summary(record):
        return list(field_value(record, "categories") or [])
    return [field_value(record, "product_category") or PLACEHOLDER_CATEGORY]


def _status_text(record: Any) -> Optional[str]:
    status = field_value(record, "status")
    return getattr(status, "value", status)


def filter_records(
    records: Iterable[Any],
    date_range: DateRange,
    venue_id: Optional[int] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
) -> list[Any]:
    """Records inside the range that match the optional equality filters."""
    selected = []
    for record in records:
        ts = record_timestamp(record)
        if ts is None or not date_range.contains(ts):
            continue
        if venue_id is not None and field_value(record, "venue_id") != venue_id:
            continue
        if category is not None and category not in _categories(record):
            continue
        if status is not None and _status_text(record) != status:
            continue
        selected.append(record)
    return selected


def aggregate(
    records: Iterable[Any],
    date_range: DateRange,
    venue_id: Optional[int] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    include_placeholders: bool = True,
) -> PeriodAggregate:
    """Revenue, order count and per-venue breakdown for one date range."""
    result = PeriodAggregate(date_range=date_range)
    venues: dict[Any, VenueStat] = {}
    venue_orders: dict[Any, set] = {}
    orders: set = set()

    for record in filter_records(records, date_range, venue_id, category, status):
        if not counts_toward_revenue(record, include_placeholders=include_placeholders):
            continue
        amount = revenue_amount(record)
        order = _order_key(record)
        rec_venue_id = field_value(record, "venue_id")
        rec_venue_name = field_value(record, "venue_name")
        key = rec_venue_id if rec_venue_id is not None else rec_venue_name

        stat = venues.get(key)
        if stat is None:
            stat = venues[key] = VenueStat(venue_id=rec_venue_id, venue_name=rec_venue_name)
            venue_orders[key] = set()
        stat.revenue += amount
        venue_orders[key].add(order)
        result.total_revenue += amount
        orders.add(order)

    for key, stat in venues.items():
        stat.revenue = round(stat.revenue, 2)
        stat.order_count = len(venue_orders[key])

    result.total_revenue = round(result.total_revenue, 2)
    result.order_count = len(orders)
    result.active_venues = len(venues)
    result.venues = sorted(venues.values(), key=lambda v: v.revenue, reverse=True)
    return result


def growth(current: float, previous: float) -> float:
    """Percentage change; from zero it is 0 (nothing sold) or 100 (anything sold)."""
    if previous == 0:
        return 0.0 if current == 0 else 100.0
    return round((current - previous) / previous * 100, 2)


def period_stats(
    records: Iterable[Any],
    token: str,
    today: Optional[date] = None,
    custom_start: str | date | None = None,
    custom_end: str | date | None = None,
    venue_id: Optional[int] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    include_placeholders: bool = True,
) -> PeriodStats:
    """Aggregates for a named period and the equal-length period before it."""
    records = list(records)
    current_range = resolve_period(token, today=today, custom_start=custom_start, custom_end=custom_end)
    previous_range = previous_period(current_range)
    options = dict(venue_id=venue_id, category=category, status=status,
                   include_placeholders=include_placeholders)

    current = aggregate(records, current_range, **options)
    previous = aggregate(records, previous_range, **options)

    before = {v.venue_id if v.venue_id is not None else v.venue_name: v for v in previous.venues}
    comparisons = []
    seen = set()
    for venue in current.venues + previous.venues:
        key = venue.venue_id if venue.venue_id is not None else venue.venue_name
        if key in seen:
            continue
        seen.add(key)
        now = next((v for v in current.venues
                    if (v.venue_id if v.venue_id is not None else v.venue_name) == key), None)
        then = before.get(key)
        comparisons.append(
            VenueComparison(
                venue_id=venue.venue_id,
                venue_name=venue.venue_name,
                revenue=now.revenue if now else 0.0,
                order_count=now.order_count if now else 0,
                previous_revenue=then.revenue if then else 0.0,
                previous_order_count=then.order_count if then else 0,
                revenue_growth=growth(now.revenue if now else 0.0, then.revenue if then else 0.0),
                orders_growth=growth(now.order_count if now else 0, then.order_count if then else 0),
            )
        )

    logger.debug(
        f"Period {token} {current_range.start}..{current_range.end}: "
        f"revenue={current.total_revenue} orders={current.order_count}"
    )
    return PeriodStats(
        current=current,
        previous=previous,
        revenue_growth=growth(current.total_revenue, previous.total_revenue),
        orders_growth=growth(current.order_count, previous.order_count),
        venues=comparisons,
    )


def top_venues(venues: Iterable[Any], n: int = DEFAULT_VENUE_RANKING) -> list[Any]:
    """Highest revenue first, truncated to ``n``."""
    return sorted(venues, key=lambda v: v.revenue, reverse=True)[:n]


def bottom_venues(venues: Iterable[Any], n: int = DEFAULT_VENUE_RANKING) -> list[Any]:
    """Lowest revenue first, truncated to ``n``."""
    return sorted(venues, key=lambda v: v.revenue)[:n]


def product_stats(
    line_items: Iterable[Any],
    date_range: DateRange,
    venue_id: Optional[int] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "revenue",
    top_n: int = DEFAULT_PRODUCT_RANKING,
    include_placeholders: bool = True,
) -> list[ProductStat]:
    """Product leaderboard by revenue or quantity."""
    if sort_by not in ("revenue", "quantity"):
        raise ValueError(f"sort_by must be 'revenue' or 'quantity', got {sort_by!r}")
    if top_n < 1:
        raise ValueError(f"top_n must be at least 1, got {top_n}")
    needle = search.strip().lower() if search else None
    products: dict[str, ProductStat] = {}

    for item in filter_records(line_items, date_range, venue_id, category):
        if not counts_toward_revenue(item, include_placeholders=include_placeholders):
            continue
        name = field_value(item, "product_name")
        if needle and needle not in (name or "").lower():
            continue
        stat = products.get(name)
        if stat is None:
            stat = products[name] = ProductStat(
                product_name=name,
                category=field_value(item, "product_category") or PLACEHOLDER_CATEGORY,
            )
        stat.quantity += field_value(item, "quantity") or 1
        stat.revenue += revenue_amount(item)
        venue_name = field_value(item, "venue_name")
        if venue_name:
            stat.venues.add(venue_name)

    for stat in products.values():
        stat.revenue = round(stat.revenue, 2)
    ranked = sorted(products.values(), key=lambda p: getattr(p, sort_by), reverse=True)
    return ranked[:top_n]


def daily_machine_stats(line_items: Iterable[Any], day: date) -> list[dict]:
    """Rows for the ``daily_stats`` table: one per machine active on ``day``."""
    day_range = DateRange(day, day)
    machines: dict[Any, dict] = {}
    sales: dict[Any, set] = {}
    successful: dict[Any, set] = {}

    for item in filter_records(line_items, day_range):
        machine_id = field_value(item, "machine_id")
        if machine_id is None:
            continue
        row = machines.get(machine_id)
        if row is None:
            row = machines[machine_id] = {
                "date": day.isoformat(),
                "machine_id": machine_id,
                "machine_name": field_value(item, "machine_name"),
                "venue_id": field_value(item, "venue_id"),
                "venue_name": field_value(item, "venue_name"),
                "total_orders": 0,
                "successful_orders": 0,
                "total_revenue_ttc": 0.0,
            }
            sales[machine_id] = set()
            successful[machine_id] = set()
        order = _order_key(item)
        sales[machine_id].add(order)
        if counts_toward_revenue(item):
            successful[machine_id].add(order)
            row["total_revenue_ttc"] += revenue_amount(item)

    for machine_id, row in machines.items():
        row["total_orders"] = len(sales[machine_id])
        row["successful_orders"] = len(successful[machine_id])
        row["total_revenue_ttc"] = round(row["total_revenue_ttc"], 2)
    return list(machines.values())
