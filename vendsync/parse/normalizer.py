"""Flatten raw VendLive sales into line items and order summaries.

Upstream payloads are untrusted: field names vary between API versions, nested
references may be missing and amounts arrive as decimal strings. Nothing in this
module raises on a malformed record; every gap resolves to a default, and the
fallbacks that drop or substitute data are counted in ``Normalizer.counters``.
"""
import hashlib
import logging
import math
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Optional

import orjson

from vendsync.parse.models import (
    PLACEHOLDER_CATEGORY,
    PLACEHOLDER_PRODUCT_NAME,
    NormalizedLineItem,
    OrderProduct,
    OrderSummary,
    SaleStatus,
)
from vendsync.parse.redact import redact_json

logger = logging.getLogger(__name__)

VENDOR_STATUS_MAP: dict[str, SaleStatus] = {
    "success": SaleStatus.COMPLETED,
    "delivered": SaleStatus.COMPLETED,
    "paid": SaleStatus.COMPLETED,
    "refunded": SaleStatus.REFUNDED,
    "failure": SaleStatus.FAILED,
    "failed": SaleStatus.FAILED,
    "canceled": SaleStatus.CANCELLED,
    "cancelled": SaleStatus.CANCELLED,
    "pending": SaleStatus.PENDING,
}

POLICY_PLACEHOLDER = "placeholder"
POLICY_SKIP = "skip"
ID_MODE_STABLE = "stable"
ID_MODE_RUN_SCOPED = "run_scoped"


def parse_amount(value: Any) -> float:
    """Decimal string (or number) to a non-negative float; anything else is 0.0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        amount = float(str(value).strip().replace(",", "."))
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(amount) or math.isinf(amount) or amount < 0:
        return 0.0
    return amount


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string to an aware UTC datetime, None when unparseable."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value.strip():
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def map_status(is_refunded: Any, vend_status: Any) -> SaleStatus:
    """Refund flag wins, then the vendor vocabulary, then ``unknown``."""
    if is_refunded is True:
        return SaleStatus.REFUNDED
    if not isinstance(vend_status, str):
        return SaleStatus.UNKNOWN
    return VENDOR_STATUS_MAP.get(vend_status.strip().lower(), SaleStatus.UNKNOWN)


def is_charged(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "true", "1")
    return False


def first_present(*values: Any) -> Any:
    """First value that is neither None nor an empty string."""
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def product_lines(sale: dict) -> list[dict]:
    """Line list under either of its known names."""
    lines = first_present(sale.get("productSales"), sale.get("products"))
    return [line for line in lines if isinstance(line, dict)] if isinstance(lines, list) else []


def resolve_product_name(line: dict) -> Optional[str]:
    return _as_str(first_present(
        _get(line, "product", "name"),
        line.get("productName"),
        line.get("name"),
    ))


def resolve_category(line: dict) -> Optional[str]:
    category = line.get("category")
    product_category = line.get("productCategory")
    return _as_str(first_present(
        _get(line, "product", "category", "name"),
        category if isinstance(category, str) else _get(category, "name"),
        product_category if isinstance(product_category, str) else _get(product_category, "name"),
    ))


def stable_unique_id(sale_id: Any, product_sale_id: Any, index: int, fallback: dict) -> str:
    """Line key derived from upstream ids only, so reruns hit the same rows.

    When either id is missing, a hash of the line's stable fields is used instead.
    """
    if sale_id is not None and product_sale_id is not None:
        return f"{sale_id}_{product_sale_id}_{index}"
    digest = hashlib.sha1(
        orjson.dumps({"sale": sale_id, "line": product_sale_id, "index": index, **fallback},
                     option=orjson.OPT_SORT_KEYS)
    ).hexdigest()
    return f"h_{digest[:24]}"


class Normalizer:
    """Turns raw sales into ``NormalizedLineItem`` rows and ``OrderSummary`` rows.

    ``policy`` decides what happens to a line whose product cannot be identified:
    ``placeholder`` keeps it with sentinel names and ``is_placeholder=True``, ``skip``
    drops it. ``id_mode`` selects the line key derivation: ``stable`` (upstream ids)
    or ``run_scoped`` (ids plus a counter seeded from the wall clock, which makes
    every run produce fresh keys).
    """

    def __init__(self, policy: str = POLICY_PLACEHOLDER, id_mode: str = ID_MODE_STABLE):
        if policy not in (POLICY_PLACEHOLDER, POLICY_SKIP):
            raise ValueError(f"Unknown product policy: {policy}")
        if id_mode not in (ID_MODE_STABLE, ID_MODE_RUN_SCOPED):
            raise ValueError(f"Unknown unique id mode: {id_mode}")
        self.policy = policy
        self.id_mode = id_mode
        self._counter = int(time.time() * 1000)
        self.counters: Counter = Counter()

    def _unique_id(self, sale: dict, line: dict, index: int, fallback: dict) -> str:
        sale_id = sale.get("id")
        line_id = line.get("id")
        if self.id_mode == ID_MODE_RUN_SCOPED:
            self._counter += 1
            machine_id = _get(sale, "machine", "id")
            history_id = _get(sale, "history", "id")
            return f"{sale_id}_{line_id}_{machine_id}_{history_id}_{index}_{self._counter}"
        return stable_unique_id(sale_id, line_id, index, fallback)

    def normalize_sale(self, sale: dict) -> list[NormalizedLineItem]:
        """One line item per product sale, in upstream order."""
        lines = product_lines(sale)
        if not lines:
            self.counters["skipped_empty"] += 1
            logger.info(f"Sale {sale.get('id')} has no product sales, skipped")
            return []

        sale_ts = first_present(
            parse_timestamp(sale.get("createdAt")),
            parse_timestamp(sale.get("timestamp")),
        )
        items: list[NormalizedLineItem] = []

        for index, line in enumerate(lines):
            product_name = resolve_product_name(line)
            category = resolve_category(line)
            is_placeholder = not product_name or not category

            if is_placeholder:
                if self.policy == POLICY_SKIP:
                    self.counters["skipped_unknown"] += 1
                    logger.debug(
                        f"Sale {sale.get('id')} line {index}: unidentified product skipped "
                        f"(name={product_name!r}, category={category!r})"
                    )
                    continue
                self.counters["placeholders"] += 1
                logger.debug(f"Sale {sale.get('id')} line {index}: placeholder product")

            created_at = first_present(parse_timestamp(line.get("timestamp")), sale_ts)
            if created_at is None:
                self.counters["timestamp_defaulted"] += 1
                created_at = datetime.now(timezone.utc)

            is_refunded = line.get("isRefunded") is True
            price_ttc = parse_amount(first_present(line.get("totalPaid"), line.get("price"), line.get("unitPrice")))

            unique_id = self._unique_id(
                sale,
                line,
                index,
                fallback={
                    "machine": _get(sale, "machine", "id"),
                    "product": product_name,
                    "created_at": created_at.isoformat(),
                    "amount": price_ttc,
                },
            )

            items.append(
                NormalizedLineItem(
                    unique_id=unique_id,
                    sale_id=_as_str(sale.get("id")),
                    machine_id=_as_int(_get(sale, "machine", "id")),
                    machine_name=_as_str(first_present(
                        _get(sale, "machine", "friendlyName"), _get(sale, "machine", "name")
                    )),
                    venue_id=_as_int(_get(sale, "location", "venue", "id")),
                    venue_name=_as_str(_get(sale, "location", "venue", "name")),
                    product_name=product_name or PLACEHOLDER_PRODUCT_NAME,
                    product_category=category or PLACEHOLDER_CATEGORY,
                    quantity=1,
                    price_ht=parse_amount(line.get("netAmount")),
                    price_ttc=price_ttc,
                    discount_amount=parse_amount(
                        first_present(line.get("discountValue"), line.get("discountAmount"))
                    ),
                    status=map_status(is_refunded, line.get("vendStatus")),
                    is_refunded=is_refunded,
                    is_placeholder=is_placeholder,
                    promo_code=_as_str(first_present(
                        line.get("voucherCode"), sale.get("voucherCode"), sale.get("promoCode")
                    )),
                    customer_email=_as_str(first_present(
                        _get(sale, "customer", "email"), sale.get("customerEmail")
                    )),
                    created_at=created_at,
                    raw_data=orjson.dumps(redact_json({"sale": sale, "productSale": line})).decode(),
                )
            )

        self.counters["line_items"] += len(items)
        return items

    def normalize_page(self, sales: list[dict]) -> list[NormalizedLineItem]:
        items: list[NormalizedLineItem] = []
        for sale in sales:
            if isinstance(sale, dict):
                items.extend(self.normalize_sale(sale))
        return items

    def summarize_sale(self, sale: dict) -> Optional[OrderSummary]:
        """Roll one sale up into an ``OrderSummary``; None when the sale has no id."""
        if sale.get("id") is None:
            self.counters["summary_without_id"] += 1
            logger.warning("Sale without id, no order summary produced")
            return None

        products: list[OrderProduct] = []
        total_ttc = total_ht = discount = 0.0
        line_timestamps = []
        for line in product_lines(sale):
            is_refunded = line.get("isRefunded") is True
            price_ttc = parse_amount(first_present(line.get("totalPaid"), line.get("price"), line.get("unitPrice")))
            total_ttc += price_ttc
            total_ht += parse_amount(line.get("netAmount"))
            discount += parse_amount(first_present(line.get("discountValue"), line.get("discountAmount")))
            products.append(
                OrderProduct(
                    product_name=resolve_product_name(line) or PLACEHOLDER_PRODUCT_NAME,
                    category=resolve_category(line) or PLACEHOLDER_CATEGORY,
                    quantity=1,
                    price_ttc=price_ttc,
                    is_refunded=is_refunded,
                    status=map_status(is_refunded, line.get("vendStatus")),
                )
            )
            ts = parse_timestamp(line.get("timestamp"))
            if ts is not None:
                line_timestamps.append(ts)

        if not products:
            # Sale-level totals for sales listed without their lines
            total_ttc = parse_amount(first_present(sale.get("total"), sale.get("totalCharged")))
            discount = parse_amount(sale.get("discountAmount"))

        created_at = first_present(
            parse_timestamp(sale.get("createdAt")),
            parse_timestamp(sale.get("timestamp")),
            min(line_timestamps) if line_timestamps else None,
        ) or datetime.now(timezone.utc)

        payment_status = sale.get("paymentStatusDisplay")
        categories = list(dict.fromkeys(p.category for p in products))
        self.counters["order_summaries"] += 1

        return OrderSummary(
            vendlive_id=str(sale["id"]),
            transaction_id=_as_str(_get(sale, "transaction", "id")),
            machine_id=_as_int(_get(sale, "machine", "id")),
            machine_name=_as_str(first_present(
                _get(sale, "machine", "friendlyName"), _get(sale, "machine", "name")
            )),
            venue_id=_as_int(_get(sale, "location", "venue", "id")),
            venue_name=_as_str(_get(sale, "location", "venue", "name")),
            customer_email=_as_str(first_present(_get(sale, "customer", "email"), sale.get("customerEmail"))),
            promo_code=_as_str(first_present(sale.get("voucherCode"), sale.get("promoCode"))),
            total_ttc=round(total_ttc, 2),
            total_ht=round(total_ht, 2),
            discount_amount=round(discount, 2),
            nb_products=len(products),
            status=self._summary_status(sale, products),
            payment_status=payment_status.lower() if isinstance(payment_status, str) else None,
            products=products,
            categories=categories,
            created_at=created_at,
        )

    @staticmethod
    def _summary_status(sale: dict, products: list[OrderProduct]) -> SaleStatus:
        """Sale-level `charged` flag decides; listings without it fall back to the lines."""
        if sale.get("charged") is not None:
            return SaleStatus.COMPLETED if is_charged(sale.get("charged")) else SaleStatus.FAILED
        if any(p.status == SaleStatus.COMPLETED for p in products):
            return SaleStatus.COMPLETED
        return SaleStatus.FAILED

    def summarize_page(self, sales: list[dict]) -> list[OrderSummary]:
        summaries = []
        for sale in sales:
            if isinstance(sale, dict):
                summary = self.summarize_sale(sale)
                if summary is not None:
                    summaries.append(summary)
        return summaries
