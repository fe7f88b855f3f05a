"""Read-only checks that run before any stock is touched."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from . import log
from .constants import ErrorKind, ServiceType
from .document_store import StoreError, WorkbookStore
from .snapshot import fetch_stock_snapshot

STORE_FAILURE_MESSAGE = "Failed to validate stock availability"
NOT_FOUND_ITEM_MESSAGE = "Product not found"


@dataclass(frozen=True)
class StockRequest:
    """A product id and the quantity a caller wants to take out of stock."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class ItemValidationResult:
    product_id: str
    product_name: str
    requested_quantity: int
    available_stock: int
    is_valid: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class StockValidationReport:
    """Aggregate verdict of :func:`validate_stock`.

    ``failure_kind`` is ``ErrorKind.STORE_FAILURE`` when the store could not
    be read at all, which callers may want to surface differently from a
    plain shortage. Either way the verdict is "do not proceed".
    """

    is_valid: bool
    items: List[ItemValidationResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    failure_kind: Optional[ErrorKind] = None


def validate_stock(store: WorkbookStore, items: Sequence[StockRequest]) -> StockValidationReport:
    """Check whether every requested quantity is available.

    Unknown products fail their own line without stopping the remaining
    checks. Nothing is written.

    Args:
        store (WorkbookStore): Store to read stock levels from.
        items (Sequence[StockRequest]): Lines to check. Each must carry a
            product id; custom lines are filtered out by the caller.

    Returns:
        StockValidationReport: Per-item results in input order plus the
            ordered list of failure messages.
    """
    try:
        snapshot = fetch_stock_snapshot(store, (item.product_id for item in items))
    except StoreError as exc:
        log.error("Stock validation could not read the store: %s", exc)
        return StockValidationReport(
            is_valid=False,
            errors=[STORE_FAILURE_MESSAGE],
            failure_kind=ErrorKind.STORE_FAILURE,
        )

    results: List[ItemValidationResult] = []
    errors: List[str] = []
    failure_kind: Optional[ErrorKind] = None
    for item in items:
        product = snapshot.get(item.product_id)
        if product is None:
            results.append(ItemValidationResult(
                product_id=item.product_id,
                product_name="Unknown Product",
                requested_quantity=item.quantity,
                available_stock=0,
                is_valid=False,
                error=NOT_FOUND_ITEM_MESSAGE,
            ))
            errors.append(f"Product with ID {item.product_id} not found")
            failure_kind = failure_kind or ErrorKind.NOT_FOUND
            continue

        is_valid = product.current_stock >= item.quantity
        error = None
        if not is_valid:
            error = (
                f"{product.name}: Insufficient stock "
                f"(Available: {product.current_stock}, Requested: {item.quantity})"
            )
            errors.append(error)
            failure_kind = failure_kind or ErrorKind.INSUFFICIENT_STOCK
        results.append(ItemValidationResult(
            product_id=item.product_id,
            product_name=product.name,
            requested_quantity=item.quantity,
            available_stock=product.current_stock,
            is_valid=is_valid,
            error=error,
        ))

    report = StockValidationReport(
        is_valid=all(result.is_valid for result in results),
        items=results,
        errors=errors,
        failure_kind=failure_kind,
    )
    if not report.is_valid:
        log.warning("Stock validation failed: %s", "; ".join(errors))
    return report


def _field(item: Any, name: str, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, name, None)


def validate_bill_items(items: Iterable[Any], *, service_type: Optional[str] = None) -> List[str]:
    """Return configuration errors for bill line items.

    Items may be :class:`shop_ledger.billing.BillItem` instances or plain
    mappings using camelCase keys. Custom lines, rewinding work, and every
    line of a custom service bill may omit the product id. A line without a
    product id must carry its own unit price since none can be looked up.

    Returns:
        list[str]: Messages such as ``"Item 2: Quantity must be greater than 0"``;
            empty when the items are acceptable.
    """
    items = list(items)
    if not items:
        return ["At least one item is required"]

    errors: List[str] = []
    custom_service = service_type == ServiceType.CUSTOM.value
    for index, item in enumerate(items, start=1):
        name = _field(item, "product_name", "productName")
        product_id = _field(item, "product_id", "productId")
        is_custom = bool(_field(item, "is_custom", "isCustom")) or "rewinding" in str(name or "").lower()
        if not (is_custom or custom_service) and not product_id:
            errors.append(f"Item {index}: Product ID is required for standard items")
        if not name or not str(name).strip():
            errors.append(f"Item {index}: Product name is required")
        quantity = _field(item, "quantity", "quantity")
        if quantity is None or quantity <= 0:
            errors.append(f"Item {index}: Quantity must be greater than 0")
        unit_price = _field(item, "unit_price", "unitPrice")
        if (unit_price is None and not product_id) or (
                unit_price is not None and Decimal(str(unit_price)) <= 0):
            errors.append(f"Item {index}: Unit price must be greater than 0")
    return errors


__all__ = [
    "StockRequest",
    "ItemValidationResult",
    "StockValidationReport",
    "validate_stock",
    "validate_bill_items",
    "STORE_FAILURE_MESSAGE",
]
