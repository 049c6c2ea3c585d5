"""Tests for sale normalization."""
from datetime import datetime, timezone

import orjson
import pytest
from vendsync.parse.models import (
    PLACEHOLDER_CATEGORY,
    PLACEHOLDER_PRODUCT_NAME,
    NormalizedLineItem,
    OrderSummary,
    SaleStatus,
)
from vendsync.parse.normalizer import (
    Normalizer,
    map_status,
    parse_amount,
    parse_timestamp,
    stable_unique_id,
)


def make_sale(**overrides) -> dict:
    sale = {
        "id": 9001,
        "createdAt": "2024-03-10T12:30:00Z",
        "charged": "Yes",
        "machine": {"id": 7, "friendlyName": "Gare Nord #1"},
        "location": {"venue": {"id": 3, "name": "Gare du Nord"}},
        "customer": {"email": "client@example.com"},
        "transaction": {"id": "tx-1"},
        "voucherCode": "SUMMER",
        "productSales": [
            {
                "id": 1,
                "vendStatus": "Success",
                "isRefunded": False,
                "totalPaid": "4.50",
                "netAmount": "3.75",
                "discountValue": "0.50",
                "product": {"name": "Salade César", "category": {"name": "Salades"}},
            },
            {
                "id": 2,
                "vendStatus": "Success",
                "isRefunded": True,
                "totalPaid": "2.00",
                "netAmount": "1.67",
                "timestamp": "2024-03-10T12:31:00Z",
                "voucherCode": "LINE10",
                "product": {"name": "Eau", "category": {"name": "Boissons"}},
            },
        ],
    }
    sale.update(overrides)
    return sale


def test_parse_amount_variants():
    """Test decimal strings, numbers and garbage."""
    assert parse_amount("4.50") == 4.5
    assert parse_amount("4,50") == 4.5
    assert parse_amount(3) == 3.0
    assert parse_amount(None) == 0.0
    assert parse_amount("abc") == 0.0
    assert parse_amount("NaN") == 0.0
    assert parse_amount("-2") == 0.0
    assert parse_amount(True) == 0.0


def test_parse_timestamp_utc():
    """Test that offsets are converted and naive values are taken as UTC."""
    assert parse_timestamp("2024-03-10T14:30:00+02:00") == datetime(2024, 3, 10, 12, 30, tzinfo=timezone.utc)
    assert parse_timestamp("2024-03-10T12:30:00") == datetime(2024, 3, 10, 12, 30, tzinfo=timezone.utc)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_map_status_refund_wins():
    """Test that the refund flag overrides any vendor status."""
    assert map_status(True, "Success") == SaleStatus.REFUNDED
    assert map_status(True, "Failure") == SaleStatus.REFUNDED
    assert map_status(False, "Success") == SaleStatus.COMPLETED
    assert map_status(None, "FAILURE") == SaleStatus.FAILED
    assert map_status(False, "Canceled") == SaleStatus.CANCELLED
    assert map_status(False, "something new") == SaleStatus.UNKNOWN
    assert map_status(False, None) == SaleStatus.UNKNOWN


def test_normalize_sale_one_item_per_product_sale():
    """Test line item fields for a two-product sale."""
    items = Normalizer().normalize_sale(make_sale())
    assert len(items) == 2

    first, second = items
    assert first.unique_id == "9001_1_0"
    assert second.unique_id == "9001_2_1"
    assert first.sale_id == "9001"
    assert first.machine_id == 7
    assert first.machine_name == "Gare Nord #1"
    assert first.venue_id == 3
    assert first.venue_name == "Gare du Nord"
    assert first.product_name == "Salade César"
    assert first.product_category == "Salades"
    assert first.price_ttc == 4.5
    assert first.price_ht == 3.75
    assert first.discount_amount == 0.5
    assert first.status == SaleStatus.COMPLETED
    assert first.promo_code == "SUMMER"
    assert first.customer_email == "client@example.com"
    assert first.created_at == datetime(2024, 3, 10, 12, 30, tzinfo=timezone.utc)

    assert second.status == SaleStatus.REFUNDED
    assert second.is_refunded is True
    assert second.promo_code == "LINE10"
    assert second.created_at == datetime(2024, 3, 10, 12, 31, tzinfo=timezone.utc)


def test_normalize_sale_alternate_field_names():
    """Test `products` list, flat names and string categories."""
    sale = {
        "id": "abc",
        "timestamp": "2024-03-10T08:00:00Z",
        "products": [
            {"id": 5, "productName": "Wrap", "category": "Sandwichs", "price": "6"},
            {"id": 6, "name": "Cookie", "productCategory": {"name": "Desserts"}, "unitPrice": 2},
        ],
    }
    items = Normalizer().normalize_sale(sale)
    assert [i.product_name for i in items] == ["Wrap", "Cookie"]
    assert [i.product_category for i in items] == ["Sandwichs", "Desserts"]
    assert [i.price_ttc for i in items] == [6.0, 2.0]
    assert items[0].created_at == datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)


def test_normalize_sale_without_products_is_skipped():
    """Test that an empty sale yields nothing and is counted."""
    normalizer = Normalizer()
    assert normalizer.normalize_sale(make_sale(productSales=[])) == []
    assert normalizer.counters["skipped_empty"] == 1


def test_unknown_product_placeholder_policy():
    """Test that unidentified products are kept with sentinel names."""
    sale = make_sale(productSales=[{"id": 1, "vendStatus": "Success", "totalPaid": "3"}])
    normalizer = Normalizer(policy="placeholder")
    items = normalizer.normalize_sale(sale)
    assert len(items) == 1
    assert items[0].product_name == PLACEHOLDER_PRODUCT_NAME
    assert items[0].product_category == PLACEHOLDER_CATEGORY
    assert items[0].is_placeholder is True
    assert items[0].price_ttc == 3.0
    assert normalizer.counters["placeholders"] == 1


def test_unknown_product_skip_policy():
    """Test that the skip policy drops unidentified lines and counts them."""
    sale = make_sale()
    sale["productSales"].append({"id": 3, "vendStatus": "Success", "totalPaid": "1"})
    normalizer = Normalizer(policy="skip")
    items = normalizer.normalize_sale(sale)
    assert len(items) == 2
    assert normalizer.counters["skipped_unknown"] == 1


def test_invalid_policy_rejected():
    """Test constructor validation."""
    with pytest.raises(ValueError):
        Normalizer(policy="drop")
    with pytest.raises(ValueError):
        Normalizer(id_mode="random")


def test_missing_timestamp_defaults_to_now():
    """Test the last-resort timestamp."""
    sale = make_sale(createdAt=None)
    sale["productSales"] = [sale["productSales"][0]]
    normalizer = Normalizer()
    before = datetime.now(timezone.utc)
    items = normalizer.normalize_sale(sale)
    assert items[0].created_at >= before
    assert normalizer.counters["timestamp_defaulted"] == 1


def test_malformed_amounts_never_raise():
    """Test that garbage monetary fields become 0.0."""
    sale = make_sale()
    sale["productSales"][0]["totalPaid"] = "n/a"
    sale["productSales"][0]["netAmount"] = {"oops": 1}
    items = Normalizer().normalize_sale(sale)
    assert items[0].price_ttc == 0.0
    assert items[0].price_ht == 0.0


def test_stable_ids_are_identical_across_runs():
    """Test that two normalizers produce the same keys for the same sale."""
    first = [i.unique_id for i in Normalizer().normalize_sale(make_sale())]
    second = [i.unique_id for i in Normalizer().normalize_sale(make_sale())]
    assert first == second


def test_stable_id_hash_fallback():
    """Test that a missing line id falls back to a deterministic hash."""
    a = stable_unique_id(9001, None, 0, {"product": "Eau"})
    b = stable_unique_id(9001, None, 0, {"product": "Eau"})
    c = stable_unique_id(9001, None, 1, {"product": "Eau"})
    assert a == b
    assert a != c
    assert a.startswith("h_")


def test_run_scoped_ids_differ_across_runs():
    """Test the legacy counter-seeded keys."""
    first = Normalizer(id_mode="run_scoped")
    items = first.normalize_sale(make_sale())
    again = first.normalize_sale(make_sale())
    assert items[0].unique_id != again[0].unique_id
    assert items[0].unique_id.startswith("9001_1_7_None_0_")


def test_raw_data_is_redacted_json():
    """Test that raw payloads are stored as redacted JSON text."""
    sale = make_sale(authorization="Token abcdef")
    item = Normalizer().normalize_sale(sale)[0]
    raw = orjson.loads(item.raw_data)
    assert raw["sale"]["authorization"] == "[REDACTED]"
    assert raw["productSale"]["id"] == 1


def test_to_row_uses_storage_columns():
    """Test the orders row shape."""
    row = Normalizer().normalize_sale(make_sale())[0].to_row()
    assert row["vendlive_id"] == "9001_1_0"
    assert row["transaction_id"] == "9001"
    assert row["client_email"] == "client@example.com"
    assert row["status"] == "completed"
    assert row["created_at"] == "2024-03-10T12:30:00+00:00"
    assert NormalizedLineItem.model_validate(row).unique_id == "9001_1_0"


def test_summarize_sale_rolls_up_lines():
    """Test order summary totals and product list."""
    summary = Normalizer().summarize_sale(make_sale())
    assert summary.vendlive_id == "9001"
    assert summary.transaction_id == "tx-1"
    assert summary.total_ttc == 6.5
    assert summary.total_ht == 5.42
    assert summary.nb_products == 2
    assert summary.status == SaleStatus.COMPLETED
    assert summary.categories == ["Salades", "Boissons"]
    assert [p.is_refunded for p in summary.products] == [False, True]


def test_summarize_sale_status_from_charged_flag():
    """Test that `charged` decides the summary status."""
    assert Normalizer().summarize_sale(make_sale(charged="No")).status == SaleStatus.FAILED
    assert Normalizer().summarize_sale(make_sale(charged=True)).status == SaleStatus.COMPLETED


def test_summarize_sale_without_charged_uses_lines():
    """Test the fallback when the listing omits `charged`."""
    sale = make_sale()
    del sale["charged"]
    assert Normalizer().summarize_sale(sale).status == SaleStatus.COMPLETED
    sale["productSales"] = [{"id": 1, "vendStatus": "Failure", "totalPaid": "1"}]
    assert Normalizer().summarize_sale(sale).status == SaleStatus.FAILED


def test_summarize_sale_without_id():
    """Test that a sale without id produces no summary."""
    normalizer = Normalizer()
    assert normalizer.summarize_sale(make_sale(id=None)) is None
    assert normalizer.counters["summary_without_id"] == 1


def test_summary_row_round_trips_json_columns():
    """Test that JSON columns read back as text are decoded."""
    row = Normalizer().summarize_sale(make_sale()).to_row()
    row["products"] = orjson.dumps(row["products"]).decode()
    row["categories"] = orjson.dumps(row["categories"]).decode()
    summary = OrderSummary.model_validate(row)
    assert summary.products[1].product_name == "Eau"
    assert summary.categories == ["Salades", "Boissons"]


def test_normalize_page_ignores_non_dicts():
    """Test page-level helpers."""
    normalizer = Normalizer()
    sales = [make_sale(), "garbage", make_sale(id=9002)]
    assert len(normalizer.normalize_page(sales)) == 4
    assert len(normalizer.summarize_page(sales)) == 2
    assert normalizer.counters["line_items"] == 4
