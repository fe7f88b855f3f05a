"""Read-only inventory reports built from the cached runtime views."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from . import log
from .constants import TransactionType
from .core_logic import RuntimeContext, list_products, list_stock_transactions
from .data_manager import StockTransactionRow


@dataclass(frozen=True)
class StockAlert:
    product_id: str
    product_name: str
    brand: str
    current_stock: int
    minimum_stock: int
    reorder_level: int
    alert_level: str


@dataclass(frozen=True)
class InventoryValueLine:
    product_id: str
    name: str
    brand: str
    stock: int
    unit_price: Decimal
    total_value: Decimal
    unit: str


@dataclass(frozen=True)
class InventoryValue:
    total_value: Decimal
    total_items: int
    breakdown: List[InventoryValueLine]


@dataclass(frozen=True)
class ProductMovement:
    product_id: str
    name: str
    brand: str
    total_quantity: int
    total_value: Decimal
    transactions: int


@dataclass(frozen=True)
class MovementSummary:
    total_transactions: int
    total_sales: int
    total_purchases: int
    total_value: Decimal
    top_moving_products: List[ProductMovement]


def stock_history(context: RuntimeContext, product_id: str, limit: int = 50) -> List[StockTransactionRow]:
    """Return the newest ``limit`` stock transactions recorded for ``product_id``."""
    rows = list_stock_transactions(context, product_id=product_id)
    rows.sort(key=lambda row: row.transaction_date, reverse=True)
    return rows[:limit]


def low_stock_alerts(context: RuntimeContext) -> List[StockAlert]:
    """List active products whose stock is at or below their minimum.

    Alerts are ordered by ascending stock. ``alert_level`` is
    ``out_of_stock`` at zero or below, otherwise ``low_stock``.
    """
    alerts = [
        StockAlert(
            product_id=product.product_id,
            product_name=product.name,
            brand=product.brand or "Unknown",
            current_stock=product.current_stock,
            minimum_stock=product.minimum_stock,
            reorder_level=product.reorder_level,
            alert_level="out_of_stock" if product.current_stock <= 0 else "low_stock",
        )
        for product in list_products(context)
        if product.is_active and product.current_stock <= product.minimum_stock
    ]
    alerts.sort(key=lambda alert: alert.current_stock)
    log.debug("Computed %d low stock alert(s)", len(alerts))
    return alerts


def inventory_value(context: RuntimeContext) -> InventoryValue:
    """Value stock on hand at purchase price.

    Returns:
        InventoryValue: Totals across active products and a breakdown of the
            products holding stock, most valuable first.
    """
    total_value = Decimal("0.00")
    total_items = 0
    breakdown: List[InventoryValueLine] = []
    for product in list_products(context):
        if not product.is_active:
            continue
        value = product.current_stock * product.purchase_price
        total_items += product.current_stock
        total_value += value
        if product.current_stock > 0:
            breakdown.append(InventoryValueLine(
                product_id=product.product_id,
                name=product.name,
                brand=product.brand or "Unknown",
                stock=product.current_stock,
                unit_price=product.purchase_price,
                total_value=value,
                unit=product.unit,
            ))
    breakdown.sort(key=lambda line: line.total_value, reverse=True)
    return InventoryValue(total_value=total_value, total_items=total_items, breakdown=breakdown)


def movement_summary(
    context: RuntimeContext,
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    top: int = 10,
) -> MovementSummary:
    """Summarise stock transactions dated within ``[start, end]``.

    Bounds are ISO-8601 strings compared lexically with the stored
    ``TransactionDate`` values; ``None`` leaves that side open.
    """
    rows = [
        row
        for row in list_stock_transactions(context)
        if (start is None or row.transaction_date >= start) and (end is None or row.transaction_date <= end)
    ]
    products = {product.product_id: product for product in list_products(context, include_deleted=True)}

    quantities: Counter[str] = Counter()
    counts: Counter[str] = Counter()
    values: Dict[str, Decimal] = defaultdict(Decimal)
    total_value = Decimal("0.00")
    for row in rows:
        total_value += row.total_amount
        quantities[row.product_id] += abs(row.quantity)
        counts[row.product_id] += 1
        values[row.product_id] += row.total_amount

    ranked = [
        ProductMovement(
            product_id=product_id,
            name=products[product_id].name if product_id in products else "Unknown",
            brand=(products[product_id].brand if product_id in products else "") or "Unknown",
            total_quantity=quantities[product_id],
            total_value=values[product_id],
            transactions=counts[product_id],
        )
        for product_id in counts
    ]
    ranked.sort(key=lambda item: item.total_quantity, reverse=True)

    return MovementSummary(
        total_transactions=len(rows),
        total_sales=sum(1 for row in rows if row.transaction_type == TransactionType.SALE.value),
        total_purchases=sum(1 for row in rows if row.transaction_type == TransactionType.PURCHASE.value),
        total_value=total_value,
        top_moving_products=ranked[:top],
    )


__all__ = [
    "StockAlert",
    "InventoryValueLine",
    "InventoryValue",
    "ProductMovement",
    "MovementSummary",
    "stock_history",
    "low_stock_alerts",
    "inventory_value",
    "movement_summary",
]
