"""Bill line items, totals, and the create/cancel bill workflows."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import data_manager, log
from .constants import (
    BillStatus,
    LocationType,
    PriceResolution,
    ServiceType,
    StockDirection,
    TransactionStatus,
    TransactionType,
)
from .core_logic import RuntimeContext, _resolve_timestamp, generate_transaction_id
from .document_store import StoreError
from .errors import BusinessRuleViolation, MissingReferenceError
from .ledger import LedgerItem, LedgerReport, apply_stock_change
from .snapshot import fetch_prices
from .validation import StockRequest, validate_bill_items, validate_stock

ZERO = Decimal("0")


@dataclass(frozen=True)
class BillItem:
    """A requested bill line.

    ``unit_price`` may be left as ``None`` for catalog products; the create
    bill workflow fills in the current selling price.
    """

    product_name: str
    quantity: int
    unit_price: Optional[Decimal] = None
    product_id: Optional[str] = None
    unit: str = "piece"
    is_custom: bool = False
    total_price: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.total_price is None and self.unit_price is not None:
            object.__setattr__(self, "total_price", self.quantity * self.unit_price)

    @property
    def dedup_key(self) -> str:
        return self.product_id or f"custom-{self.product_name}"

    @property
    def tracks_stock(self) -> bool:
        return bool(self.product_id) and not self.is_custom

    def to_document(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "quantity": self.quantity,
            "unitPrice": str(self.unit_price) if self.unit_price is not None else None,
            "totalPrice": str(self.total_price) if self.total_price is not None else None,
            "unit": self.unit,
            "isCustom": self.is_custom,
        }


def dedupe_items(
    items: Iterable[BillItem],
    policy: PriceResolution = PriceResolution.FIRST_OCCURRENCE,
) -> List[BillItem]:
    """Collapse lines that refer to the same product or custom item.

    Lines are keyed by product id, or ``"custom-" + product_name`` when there
    is none. Quantities of colliding lines are summed and the total is
    recomputed from the unit price chosen by ``policy``. Output keeps the
    order in which each key first appeared.

    Args:
        items (Iterable[BillItem]): Lines as entered.
        policy (PriceResolution): Pricing rule for collapsed lines.

    Returns:
        list[BillItem]: One line per key.

    Raises:
        ValueError: If ``policy`` is not supported.
    """
    if policy is not PriceResolution.FIRST_OCCURRENCE:
        raise ValueError(f"Unsupported price resolution policy: {policy}")

    merged: Dict[str, BillItem] = {}
    for item in items:
        existing = merged.get(item.dedup_key)
        if existing is None:
            merged[item.dedup_key] = item
            continue
        quantity = existing.quantity + item.quantity
        total = quantity * existing.unit_price if existing.unit_price is not None else None
        merged[item.dedup_key] = replace(existing, quantity=quantity, total_price=total)
    return list(merged.values())


@dataclass(frozen=True)
class BillTotals:
    subtotal: Decimal
    home_visit_fee: Decimal
    repair_charges: Decimal
    labor_charges: Decimal
    transportation_fee: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def calculate_bill_totals(
    items: Sequence[BillItem],
    *,
    home_visit_fee: Decimal = ZERO,
    repair_charges: Decimal = ZERO,
    labor_charges: Decimal = ZERO,
    transportation_fee: Decimal = ZERO,
    tax_rate: Decimal = ZERO,
    discount_amount: Decimal = ZERO,
) -> BillTotals:
    """Add up line totals and extra charges.

    Tax is ``tax_rate`` percent of the subtotal plus all charges; the
    discount is subtracted after tax.
    """
    subtotal = sum((item.total_price or ZERO for item in items), ZERO)
    before_tax = subtotal + home_visit_fee + repair_charges + labor_charges + transportation_fee
    tax_amount = before_tax * tax_rate / Decimal("100")
    return BillTotals(
        subtotal=subtotal,
        home_visit_fee=home_visit_fee,
        repair_charges=repair_charges,
        labor_charges=labor_charges,
        transportation_fee=transportation_fee,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=before_tax + tax_amount - discount_amount,
    )


def generate_bill_number(when: Optional[datetime] = None) -> str:
    """Return a display number shaped like ``BILL-2024-123456``."""
    when = _resolve_timestamp(when)
    millis = str(int(when.timestamp() * 1000))
    return f"BILL-{when.year}-{millis[-6:]}"


@dataclass(frozen=True)
class CreateBillRequest:
    customer_id: str
    items: Sequence[BillItem]
    service_type: ServiceType = ServiceType.SALE
    location_type: LocationType = LocationType.SHOP
    home_visit_fee: Decimal = ZERO
    repair_charges: Decimal = ZERO
    labor_charges: Decimal = ZERO
    transportation_fee: Decimal = ZERO
    tax_rate: Decimal = ZERO
    discount_amount: Decimal = ZERO
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CreateBillResult:
    """Outcome of :func:`create_bill`.

    ``stage`` names the last step reached: ``item_validation``,
    ``stock_validation`` or ``write`` when the bill was rejected there, and
    ``completed`` once the bill is stored. A stored bill is never rolled
    back; ``success`` is ``False`` for a completed bill only when the stock
    update reported failed items.
    """

    success: bool
    stage: str
    bill: Optional[data_manager.BillRow] = None
    errors: List[str] = field(default_factory=list)
    stock_update: Optional[LedgerReport] = None


def _resolve_prices(context: RuntimeContext, items: Sequence[BillItem]) -> List[BillItem]:
    missing = [item.product_id for item in items if item.unit_price is None and item.product_id]
    prices = fetch_prices(context.store, missing) if missing else {}
    resolved: List[BillItem] = []
    for item in items:
        if item.unit_price is None:
            info = prices.get(item.product_id or "")
            unit_price = info.selling_price if info is not None else ZERO
            unit = info.unit if info is not None else item.unit
            item = replace(item, unit_price=unit_price, unit=unit, total_price=item.quantity * unit_price)
        resolved.append(item)
    return resolved


def create_bill(context: RuntimeContext, request: CreateBillRequest) -> CreateBillResult:
    """Validate, store, and charge stock for a new bill.

    Steps run in order and stop at the first rejection:

    1. duplicate lines are collapsed with :func:`dedupe_items`;
    2. line items are checked with
       :func:`shop_ledger.validation.validate_bill_items`;
    3. missing unit prices are filled from the current selling prices;
    4. stock lines are checked with
       :func:`shop_ledger.validation.validate_stock`;
    5. the bill row is written with status ``draft``;
    6. stock is reduced through
       :func:`shop_ledger.ledger.apply_stock_change`.

    Failures in step 6 are reported in ``stock_update`` and do not remove the
    bill written in step 5.

    Args:
        context (RuntimeContext): Runtime context providing store access.
        request (CreateBillRequest): Customer, lines, and charges.

    Returns:
        CreateBillResult: Result describing how far the workflow got.
    """
    items = dedupe_items(request.items)
    item_errors = validate_bill_items(items, service_type=request.service_type.value)
    if item_errors:
        log.warning("Bill rejected for customer '%s': %s", request.customer_id, "; ".join(item_errors))
        return CreateBillResult(success=False, stage="item_validation", errors=item_errors)

    try:
        items = _resolve_prices(context, items)
        stock_lines = [item for item in items if item.tracks_stock]
        report = validate_stock(
            context.store,
            [StockRequest(product_id=str(item.product_id), quantity=item.quantity) for item in stock_lines],
        )
    except StoreError as exc:
        log.error("Bill rejected, price lookup failed: %s", exc)
        return CreateBillResult(success=False, stage="stock_validation", errors=[str(exc)])
    if not report.is_valid:
        return CreateBillResult(success=False, stage="stock_validation", errors=list(report.errors))

    when = _resolve_timestamp(request.timestamp)
    home_visit_fee = request.home_visit_fee if request.location_type is not LocationType.SHOP else ZERO
    repair_charges = request.repair_charges if request.service_type is ServiceType.REPAIR else ZERO
    totals = calculate_bill_totals(
        items,
        home_visit_fee=home_visit_fee,
        repair_charges=repair_charges,
        labor_charges=request.labor_charges,
        transportation_fee=request.transportation_fee,
        tax_rate=request.tax_rate,
        discount_amount=request.discount_amount,
    )
    bill = data_manager.BillRow(
        bill_id=generate_transaction_id(prefix="B", when=when),
        bill_number=generate_bill_number(when),
        customer_id=request.customer_id,
        service_type=request.service_type.value,
        location_type=request.location_type.value,
        status=BillStatus.DRAFT.value,
        items=tuple(item.to_document() for item in items),
        subtotal=totals.subtotal,
        home_visit_fee=totals.home_visit_fee,
        repair_charges=totals.repair_charges,
        labor_charges=totals.labor_charges,
        transportation_fee=totals.transportation_fee,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total_amount=totals.total_amount,
        created_at=when.isoformat(),
        notes=request.notes,
    )
    try:
        context.store.create_bill(bill)
    except StoreError as exc:
        log.error("Failed to write bill for customer '%s': %s", request.customer_id, exc)
        return CreateBillResult(success=False, stage="write", errors=[str(exc)])
    log.info("Created bill '%s' (%s) total %s", bill.bill_id, bill.bill_number, bill.total_amount)

    stock_update = apply_stock_change(
        context,
        [LedgerItem(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price)
         for item in stock_lines],
        bill.bill_id,
        StockDirection.REDUCE,
    )
    if not stock_update.success:
        log.error("Bill '%s' stored but stock update failed: %s", bill.bill_id, "; ".join(stock_update.errors))
    return CreateBillResult(
        success=stock_update.success,
        stage="completed",
        bill=bill,
        errors=list(stock_update.errors),
        stock_update=stock_update,
    )


def _outstanding_sales(context: RuntimeContext, bill_id: str) -> List[LedgerItem]:
    """Quantities sold for ``bill_id`` that no return has put back yet."""
    sold: Dict[str, int] = {}
    prices: Dict[str, Decimal] = {}
    for row in context.store.fetch_stock_transactions():
        if row.bill_id != bill_id or row.status != TransactionStatus.COMPLETED.value:
            continue
        if row.transaction_type == TransactionType.SALE.value:
            sold[row.product_id] = sold.get(row.product_id, 0) + row.quantity
            prices.setdefault(row.product_id, row.unit_price)
        elif row.transaction_type == TransactionType.RETURN.value:
            sold[row.product_id] = sold.get(row.product_id, 0) - row.quantity
    return [
        LedgerItem(product_id=product_id, quantity=quantity, unit_price=prices.get(product_id))
        for product_id, quantity in sold.items()
        if quantity > 0
    ]


def cancel_bill(context: RuntimeContext, bill_id: str) -> LedgerReport:
    """Cancel a bill and put the stock it actually sold back on the shelf.

    Only quantities recorded by completed ``sale`` transactions for the bill,
    less any ``return`` transactions already written, are restored, so lines
    whose stock update failed are not restocked. The bill is marked
    ``cancelled`` only when every restore succeeds; otherwise it keeps its
    status and a later call restores what is still outstanding.

    Raises:
        MissingReferenceError: If ``bill_id`` is unknown.
        BusinessRuleViolation: If the bill is already cancelled.
    """
    bill = context.store.fetch_bill(bill_id)
    if bill is None:
        raise MissingReferenceError(f"Unknown bill id: {bill_id}")
    if bill.status == BillStatus.CANCELLED.value:
        raise BusinessRuleViolation(f"Bill '{bill_id}' is already cancelled")

    report = apply_stock_change(context, _outstanding_sales(context, bill_id), bill_id, StockDirection.RESTORE)
    if not report.success:
        log.warning("Bill '%s' left %s: %s", bill_id, bill.status, "; ".join(report.errors))
        return report
    context.store.patch(data_manager.BILLS_SHEET, bill_id, set_fields={"Status": BillStatus.CANCELLED.value})
    log.info("Cancelled bill '%s'", bill_id)
    return report


__all__ = [
    "BillItem",
    "BillTotals",
    "CreateBillRequest",
    "CreateBillResult",
    "dedupe_items",
    "calculate_bill_totals",
    "generate_bill_number",
    "create_bill",
    "cancel_bill",
]
