"""Tests for the read-only inventory reports."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from shop_ledger import ledger, lifecycle, reports
from shop_ledger.constants import StockDirection
from shop_ledger.ledger import LedgerItem


def test_stock_history_is_newest_first_and_limited(context, add_product, set_fixed_datetime):
    add_product("P1", current_stock=10)
    for day in (1, 2, 3):
        set_fixed_datetime(datetime(2024, 5, day, 9, 0, tzinfo=UTC))
        ledger.apply_stock_change(context, [LedgerItem("P1", 1)], f"B{day}", StockDirection.REDUCE)

    history = reports.stock_history(context, "P1", limit=2)

    assert [row.bill_id for row in history] == ["B3", "B2"]


def test_low_stock_alerts_are_sorted_and_classified(context, add_product):
    add_product("P1", current_stock=3, minimum_stock=5)
    add_product("P2", current_stock=0, minimum_stock=2)
    add_product("P3", current_stock=9, minimum_stock=2)
    add_product("P4", current_stock=1, minimum_stock=4, is_active=False)
    add_product("P5", current_stock=2, minimum_stock=2)
    lifecycle.soft_delete_products(context, "P5")

    alerts = reports.low_stock_alerts(context)

    assert [(alert.product_id, alert.alert_level) for alert in alerts] == [
        ("P2", "out_of_stock"),
        ("P1", "low_stock"),
    ]


def test_inventory_value_uses_purchase_price(context, add_product):
    add_product("P1", current_stock=2, purchase_price=Decimal("100.00"))
    add_product("P2", current_stock=10, purchase_price=Decimal("35.00"))
    add_product("P3", current_stock=0, purchase_price=Decimal("999.00"))

    value = reports.inventory_value(context)

    assert value.total_value == Decimal("550.00")
    assert value.total_items == 12
    assert [line.product_id for line in value.breakdown] == ["P2", "P1"]


def test_movement_summary_ranks_by_quantity_within_window(context, add_product, set_fixed_datetime):
    add_product("P1", current_stock=20, selling_price=Decimal("10.00"))
    add_product("P2", current_stock=20, selling_price=Decimal("5.00"))
    set_fixed_datetime(datetime(2024, 4, 30, tzinfo=UTC))
    ledger.apply_stock_change(context, [LedgerItem("P1", 9)], "B0", StockDirection.REDUCE)
    set_fixed_datetime(datetime(2024, 5, 2, tzinfo=UTC))
    ledger.apply_stock_change(context, [LedgerItem("P1", 1), LedgerItem("P2", 4)], "B1", StockDirection.REDUCE)

    summary = reports.movement_summary(context, start="2024-05-01", end="2024-05-31")

    assert summary.total_transactions == 2
    assert summary.total_sales == 2
    assert summary.total_purchases == 0
    assert summary.total_value == Decimal("30.00")
    assert [item.product_id for item in summary.top_moving_products] == ["P2", "P1"]
    assert summary.top_moving_products[0].total_quantity == 4
