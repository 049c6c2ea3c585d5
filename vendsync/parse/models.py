"""Data models for normalized sales records."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import orjson
from pydantic import BaseModel, Field, field_validator

PLACEHOLDER_PRODUCT_NAME = "Produit inconnu"
PLACEHOLDER_CATEGORY = "Non catégorisé"


class SaleStatus(str, Enum):
    """Closed status set every vendor status is mapped into."""

    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"
    UNKNOWN = "unknown"


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_list(value: Any) -> Any:
    """Storage may hand JSON columns back as text."""
    if isinstance(value, (str, bytes)):
        try:
            return orjson.loads(value)
        except orjson.JSONDecodeError:
            return []
    return value if value is not None else []


class NormalizedLineItem(BaseModel):
    """One product within one upstream sale, the unit persisted in ``orders``."""

    unique_id: str = Field(..., alias="vendlive_id", description="Globally unique line key")
    sale_id: Optional[str] = Field(default=None, alias="transaction_id")
    machine_id: Optional[int] = None
    machine_name: Optional[str] = None
    venue_id: Optional[int] = None
    venue_name: Optional[str] = None
    product_name: str = PLACEHOLDER_PRODUCT_NAME
    product_category: str = PLACEHOLDER_CATEGORY
    quantity: int = 1
    price_ht: float = 0.0
    price_ttc: float = 0.0
    discount_amount: float = 0.0
    status: SaleStatus = SaleStatus.UNKNOWN
    is_refunded: bool = False
    is_placeholder: bool = False
    promo_code: Optional[str] = None
    customer_email: Optional[str] = Field(default=None, alias="client_email")
    created_at: datetime
    raw_data: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def to_row(self) -> dict[str, Any]:
        """Row for the ``orders`` table."""
        return {
            "vendlive_id": self.unique_id,
            "transaction_id": self.sale_id,
            "machine_id": self.machine_id,
            "machine_name": self.machine_name,
            "venue_id": self.venue_id,
            "venue_name": self.venue_name,
            "product_name": self.product_name,
            "product_category": self.product_category,
            "quantity": self.quantity,
            "price_ht": self.price_ht,
            "price_ttc": self.price_ttc,
            "discount_amount": self.discount_amount,
            "status": self.status.value,
            "is_refunded": self.is_refunded,
            "is_placeholder": self.is_placeholder,
            "promo_code": self.promo_code,
            "client_email": self.customer_email,
            "created_at": self.created_at.isoformat(),
            "raw_data": self.raw_data,
        }


class OrderProduct(BaseModel):
    """Product entry embedded in an order summary."""

    product_name: str
    category: str
    quantity: int = 1
    price_ttc: float = 0.0
    is_refunded: bool = False
    status: SaleStatus = SaleStatus.UNKNOWN


class OrderSummary(BaseModel):
    """One upstream sale with its lines rolled up, the unit persisted in ``sales``."""

    vendlive_id: str = Field(..., description="Upstream sale id")
    transaction_id: Optional[str] = None
    machine_id: Optional[int] = None
    machine_name: Optional[str] = None
    venue_id: Optional[int] = None
    venue_name: Optional[str] = None
    customer_email: Optional[str] = None
    promo_code: Optional[str] = None
    total_ttc: float = 0.0
    total_ht: float = 0.0
    discount_amount: float = 0.0
    nb_products: int = 0
    status: SaleStatus = SaleStatus.UNKNOWN
    payment_status: Optional[str] = None
    products: list[OrderProduct] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    created_at: datetime

    model_config = {"extra": "ignore"}

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("products", "categories", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        return _json_list(value)

    def to_row(self) -> dict[str, Any]:
        """Row for the ``sales`` table."""
        return {
            "vendlive_id": self.vendlive_id,
            "transaction_id": self.transaction_id,
            "machine_id": self.machine_id,
            "machine_name": self.machine_name,
            "venue_id": self.venue_id,
            "venue_name": self.venue_name,
            "customer_email": self.customer_email,
            "promo_code": self.promo_code,
            "total_ttc": self.total_ttc,
            "total_ht": self.total_ht,
            "discount_amount": self.discount_amount,
            "nb_products": self.nb_products,
            "status": self.status.value,
            "payment_status": self.payment_status,
            "products": [p.model_dump(mode="json") for p in self.products],
            "categories": list(self.categories),
            "created_at": self.created_at.isoformat(),
        }
