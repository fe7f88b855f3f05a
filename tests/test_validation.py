"""Tests for the read-only stock and bill item validators."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

from shop_ledger import snapshot
from shop_ledger.constants import ErrorKind
from shop_ledger.document_store import StoreError
from shop_ledger.validation import (
    STORE_FAILURE_MESSAGE,
    StockRequest,
    validate_bill_items,
    validate_stock,
)


# ---------------------------------------------------------------------------
# Snapshot readers
# ---------------------------------------------------------------------------


def test_fetch_prices_ignores_blank_and_duplicate_ids(context, add_product):
    """Only distinct, non-empty ids are looked up."""

    add_product("P1", selling_price=Decimal("55.00"), purchase_price=Decimal("40.00"), unit="metre")

    prices = snapshot.fetch_prices(context.store, ["P1", "", "P1", "ghost"])

    assert set(prices) == {"P1"}
    assert prices["P1"].selling_price == Decimal("55.00")
    assert prices["P1"].purchase_price == Decimal("40.00")
    assert prices["P1"].unit == "metre"


def test_fetch_prices_skips_store_for_empty_input():
    store = Mock()

    assert snapshot.fetch_prices(store, []) == {}
    store.fetch_projection.assert_not_called()


def test_fetch_stock_snapshot_issues_single_projection(context, add_product):
    """The whole id set is read with one projected fetch."""

    add_product("P1", current_stock=4)
    add_product("P2", current_stock=9)
    store = Mock(wraps=context.store)

    result = snapshot.fetch_stock_snapshot(store, ["P1", "P2"])

    assert store.fetch_projection.call_count == 1
    assert result["P1"].current_stock == 4
    assert result["P2"].current_stock == 9
    assert result["P2"].deleted is False


# ---------------------------------------------------------------------------
# validate_stock
# ---------------------------------------------------------------------------


def test_validate_stock_accepts_available_quantities(context, add_product):
    add_product("P1", current_stock=5)

    report = validate_stock(context.store, [StockRequest("P1", 5)])

    assert report.is_valid is True
    assert report.errors == []
    assert report.items[0].available_stock == 5


def test_validate_stock_reports_shortage_message(context, add_product):
    """Shortages name the product and both quantities."""

    add_product("P1", name="Copper Wire", current_stock=2)

    report = validate_stock(context.store, [StockRequest("P1", 3)])

    assert report.is_valid is False
    assert report.failure_kind is ErrorKind.INSUFFICIENT_STOCK
    assert report.errors == ["Copper Wire: Insufficient stock (Available: 2, Requested: 3)"]


def test_validate_stock_missing_product_does_not_stop_other_checks(context, add_product):
    """An unknown id fails its own line while later lines are still checked."""

    add_product("P2", name="Switch", current_stock=0)

    report = validate_stock(context.store, [StockRequest("ghost", 1), StockRequest("P2", 1)])

    assert report.is_valid is False
    assert report.failure_kind is ErrorKind.NOT_FOUND
    assert report.items[0].error == "Product not found"
    assert report.items[0].product_name == "Unknown Product"
    assert report.errors == [
        "Product with ID ghost not found",
        "Switch: Insufficient stock (Available: 0, Requested: 1)",
    ]


def test_validate_stock_store_failure_is_reported_not_raised():
    """A store read failure becomes a single generic validation error."""

    store = Mock()
    store.fetch_projection.side_effect = StoreError("offline")

    report = validate_stock(store, [StockRequest("P1", 1)])

    assert report.is_valid is False
    assert report.errors == [STORE_FAILURE_MESSAGE]
    assert report.failure_kind is ErrorKind.STORE_FAILURE


def test_validate_stock_treats_soft_deleted_products_as_empty(context, add_product):
    """A soft-deleted product is found but carries no stock."""

    add_product("P1", current_stock=0)
    context.store.patch("Products", "P1", set_fields={"Deleted": True})

    report = validate_stock(context.store, [StockRequest("P1", 1)])

    assert report.failure_kind is ErrorKind.INSUFFICIENT_STOCK


# ---------------------------------------------------------------------------
# validate_bill_items
# ---------------------------------------------------------------------------


def test_validate_bill_items_requires_at_least_one_item():
    assert validate_bill_items([]) == ["At least one item is required"]


def test_validate_bill_items_flags_each_problem_with_position():
    """Messages are 1-indexed and cover every failing field."""

    items = [
        {"productId": "P1", "productName": "Bulb", "quantity": 1, "unitPrice": "10"},
        {"productId": None, "productName": "", "quantity": 0, "unitPrice": "-1"},
    ]

    errors = validate_bill_items(items)

    assert errors == [
        "Item 2: Product ID is required for standard items",
        "Item 2: Product name is required",
        "Item 2: Quantity must be greater than 0",
        "Item 2: Unit price must be greater than 0",
    ]


def test_validate_bill_items_allows_rewinding_without_product_id():
    """Rewinding work has no catalog entry but still needs a price."""

    items = [{"productName": "Motor Rewinding", "quantity": 1, "unitPrice": "450"}]

    assert validate_bill_items(items) == []


def test_validate_bill_items_custom_service_relaxes_product_id():
    items = [{"productName": "Site survey", "quantity": 1, "unitPrice": "200"}]

    assert validate_bill_items(items, service_type="custom") == []
    assert validate_bill_items(items, service_type="sale") == [
        "Item 1: Product ID is required for standard items",
    ]


def test_validate_bill_items_requires_price_when_no_product_to_look_up():
    items = [{"productName": "Labour", "quantity": 1, "isCustom": True}]

    assert validate_bill_items(items) == ["Item 1: Unit price must be greater than 0"]


def test_validate_bill_items_catalog_line_may_omit_price():
    """A catalog line without a price is priced from the store later."""

    items = [{"productId": "P1", "productName": "Bulb", "quantity": 2}]

    assert validate_bill_items(items) == []
