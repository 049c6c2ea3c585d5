"""Whether a persisted record counts toward revenue.

Every aggregation path goes through ``counts_toward_revenue``. It accepts line items
and order summaries, as models or as storage rows.
"""
from typing import Any

from pydantic import BaseModel

from vendsync.parse.models import NormalizedLineItem, OrderSummary

EXCLUDED_STATUSES = frozenset({"failed", "declined"})


def field_value(record: Any, name: str) -> Any:
    if isinstance(record, BaseModel):
        return getattr(record, name, None)
    if isinstance(record, dict):
        return record.get(name)
    return None


def _text(value: Any) -> str:
    value = getattr(value, "value", value)
    return value.strip().lower() if isinstance(value, str) else ""


def revenue_amount(record: Any) -> float:
    """TTC amount: ``price_ttc`` for line items, ``total_ttc`` for order summaries."""
    if isinstance(record, OrderSummary):
        amount = record.total_ttc
    elif isinstance(record, NormalizedLineItem):
        amount = record.price_ttc
    else:
        amount = field_value(record, "total_ttc")
        if amount is None:
            amount = field_value(record, "price_ttc")
    try:
        return float(amount or 0.0)
    except (TypeError, ValueError):
        return 0.0


def record_refunded(record: Any) -> bool:
    """Refund flag, ``refunded`` status, or any refunded product of an order summary."""
    if field_value(record, "is_refunded") is True:
        return True
    if _text(field_value(record, "status")) == "refunded":
        return True
    for product in field_value(record, "products") or []:
        if field_value(product, "is_refunded") is True or _text(field_value(product, "status")) == "refunded":
            return True
    return False


def counts_toward_revenue(record: Any, include_placeholders: bool = True) -> bool:
    if _text(field_value(record, "status")) in EXCLUDED_STATUSES:
        return False
    if _text(field_value(record, "payment_status")) in EXCLUDED_STATUSES:
        return False
    if record_refunded(record):
        return False
    if not include_placeholders and field_value(record, "is_placeholder") is True:
        return False
    return revenue_amount(record) > 0
