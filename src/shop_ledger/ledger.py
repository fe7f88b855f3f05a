"""Stock mutations paired with their audit trail.

Each line of a batch is an independent saga: increment the product's stock
counter inside the store, re-read the product, then append a completed
stock transaction. A failing line is reported and does not stop the others.
The only all-or-nothing gate is the availability check that runs before a
``REDUCE`` batch touches anything.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import data_manager, log
from .constants import ErrorKind, StockDirection, TransactionStatus, TransactionType
from .core_logic import RuntimeContext, generate_transaction_id, now_iso
from .document_store import DocumentNotFoundError, StoreError
from .events import StockChanged
from .validation import StockRequest, StockValidationReport, validate_stock

STOCK_COLUMN = "CurrentStock"


@dataclass(frozen=True)
class LedgerItem:
    """One line of a ledger batch.

    ``unit_price`` falls back to the product's selling price when omitted.
    """

    product_id: Optional[str]
    quantity: int
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True)
class ItemResult:
    product_id: Optional[str]
    success: bool
    new_stock: Optional[int] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class BatchSummary:
    attempted: int
    successful: int
    failed: int

    @classmethod
    def of(cls, outcomes: Sequence[object]) -> "BatchSummary":
        successful = sum(1 for outcome in outcomes if getattr(outcome, "success"))
        return cls(attempted=len(outcomes), successful=successful, failed=len(outcomes) - successful)


@dataclass(frozen=True)
class LedgerReport:
    """Outcome of :func:`apply_stock_change`.

    When the availability gate rejects a ``REDUCE`` batch, ``results`` is
    empty, ``errors`` repeats the validator messages and ``validation`` holds
    the full validator report.
    """

    success: bool
    direction: StockDirection
    reference_id: str
    results: List[ItemResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    validation: Optional[StockValidationReport] = None

    @property
    def summary(self) -> BatchSummary:
        return BatchSummary.of(self.results)


@dataclass(frozen=True)
class StockAdjustment:
    product_id: str
    new_stock: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentResult:
    product_id: str
    success: bool
    old_stock: Optional[int] = None
    new_stock: Optional[int] = None
    difference: int = 0
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class BulkAdjustmentReport:
    results: List[AdjustmentResult]

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def summary(self) -> BatchSummary:
        return BatchSummary.of(self.results)


def append_stock_transaction(
    context: RuntimeContext,
    *,
    transaction_type: TransactionType,
    product_id: str,
    quantity: int,
    unit_price: Decimal,
    bill_id: Optional[str],
    notes: str,
    transaction_date: Optional[str] = None,
) -> data_manager.StockTransactionRow:
    """Write one completed stock transaction and return it."""
    record = data_manager.StockTransactionRow(
        transaction_id=generate_transaction_id(),
        transaction_type=transaction_type.value,
        product_id=product_id,
        quantity=abs(int(quantity)),
        unit_price=unit_price,
        total_amount=abs(int(quantity)) * unit_price,
        bill_id=bill_id,
        notes=notes,
        status=TransactionStatus.COMPLETED.value,
        transaction_date=transaction_date or now_iso(),
    )
    context.store.create_stock_transaction(record)
    return record


def _apply_item(
    context: RuntimeContext,
    item: LedgerItem,
    reference_id: str,
    direction: StockDirection,
) -> ItemResult:
    if not item.product_id:
        log.warning("Skipping stock update for item without a productId.")
        return ItemResult(
            product_id=None,
            success=False,
            error="Item has no product id",
            error_kind=ErrorKind.CONFIGURATION,
        )
    if item.quantity <= 0:
        log.warning("Skipping stock update for '%s': quantity %s", item.product_id, item.quantity)
        return ItemResult(
            product_id=item.product_id,
            success=False,
            error="Quantity must be greater than 0",
            error_kind=ErrorKind.CONFIGURATION,
        )

    delta = item.quantity * direction.multiplier
    stamp = now_iso()
    # The increment and its audit row land together; a save sees both or neither.
    try:
        with context.store.exclusive():
            context.store.increment(
                item.product_id, STOCK_COLUMN, delta, set_fields={"LastStockUpdate": stamp})
            product = context.store.fetch_product(item.product_id)
            if product is None:
                raise DocumentNotFoundError(f"Product {item.product_id} vanished after update")
            unit_price = item.unit_price if item.unit_price is not None else product.selling_price
            transaction = append_stock_transaction(
                context,
                transaction_type=direction.transaction_type,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=unit_price,
                bill_id=reference_id,
                notes=f"Stock {direction.verb} for bill {reference_id}",
                transaction_date=stamp,
            )
    except DocumentNotFoundError as exc:
        log.error("Stock update failed for '%s': %s", item.product_id, exc)
        return ItemResult(
            product_id=item.product_id,
            success=False,
            error=f"Product with ID {item.product_id} not found",
            error_kind=ErrorKind.NOT_FOUND,
        )
    except StoreError as exc:
        log.error("Stock update failed for '%s': %s", item.product_id, exc)
        return ItemResult(
            product_id=item.product_id,
            success=False,
            error=str(exc),
            error_kind=ErrorKind.STORE_FAILURE,
        )

    context.events.publish(StockChanged(
        product_id=item.product_id,
        occurred_at=stamp,
        delta=delta,
        new_stock=product.current_stock,
        transaction_id=transaction.transaction_id,
        reference_id=reference_id,
    ))
    log.info(
        "Stock for '%s' %s by %d (now %d) for bill '%s'",
        item.product_id,
        direction.verb,
        item.quantity,
        product.current_stock,
        reference_id,
    )
    return ItemResult(
        product_id=item.product_id,
        success=True,
        new_stock=product.current_stock,
        transaction_id=transaction.transaction_id,
    )


def _combined_requests(items: Sequence[LedgerItem]) -> List[StockRequest]:
    """One availability request per product, summing repeated lines."""
    totals: Dict[str, int] = {}
    for item in items:
        if item.product_id:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return [StockRequest(product_id=product_id, quantity=quantity) for product_id, quantity in totals.items()]


def apply_stock_change(
    context: RuntimeContext,
    items: Sequence[LedgerItem],
    reference_id: str,
    direction: StockDirection,
) -> LedgerReport:
    """Move stock for every item and record one audit transaction per item.

    ``REDUCE`` batches are checked with :func:`validate_stock` first, with
    repeated lines for one product summed into a single request; any
    shortage or unknown product rejects the whole batch with no writes. Past
    that gate the items run concurrently on a thread pool sized by
    ``MaxWorkers`` and are collected in input order. An item that does not
    finish within ``ItemTimeoutSeconds`` is reported as ``ErrorKind.TIMEOUT``;
    its outcome in the store is then unknown.

    Args:
        context (RuntimeContext): Runtime context providing the store, events
            and ledger settings.
        items (Sequence[LedgerItem]): Lines to apply.
        reference_id (str): Bill identifier recorded on each transaction.
        direction (StockDirection): ``REDUCE`` for sales, ``RESTORE`` for
            reversals.

    Returns:
        LedgerReport: Per-item results; ``success`` is ``True`` only when every
            item succeeded.
    """
    if direction is StockDirection.REDUCE:
        validation = validate_stock(context.store, _combined_requests(items))
        if not validation.is_valid:
            log.warning("Rejected stock reduction for bill '%s'", reference_id)
            return LedgerReport(
                success=False,
                direction=direction,
                reference_id=reference_id,
                errors=list(validation.errors),
                validation=validation,
            )
    else:
        validation = None

    settings = context.settings
    results: List[ItemResult] = []
    pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="ledger")
    try:
        futures: List[Future[ItemResult]] = [
            pool.submit(_apply_item, context, item, reference_id, direction) for item in items
        ]
        for item, future in zip(items, futures):
            try:
                results.append(future.result(timeout=settings.item_timeout_seconds))
            except FuturesTimeoutError:
                log.error(
                    "Stock update for '%s' timed out after %ss",
                    item.product_id,
                    settings.item_timeout_seconds,
                )
                results.append(ItemResult(
                    product_id=item.product_id,
                    success=False,
                    error=f"Timed out after {settings.item_timeout_seconds}s",
                    error_kind=ErrorKind.TIMEOUT,
                ))
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    errors = [result.error for result in results if not result.success and result.error]
    report = LedgerReport(
        success=all(result.success for result in results),
        direction=direction,
        reference_id=reference_id,
        results=results,
        errors=errors,
        validation=validation,
    )
    summary = report.summary
    log.info(
        "Applied %s batch for bill '%s': %d/%d item(s) succeeded",
        direction.value,
        reference_id,
        summary.successful,
        summary.attempted,
    )
    return report


def bulk_adjust_stock(context: RuntimeContext, updates: Sequence[StockAdjustment]) -> BulkAdjustmentReport:
    """Set absolute stock levels, recording the difference as adjustments.

    Each update reads the current level, applies the difference through the
    store's atomic increment and, when the difference is non-zero, writes an
    ``adjustment`` transaction priced at the product's selling price.

    Returns:
        BulkAdjustmentReport: One result per update in input order.
    """
    results: List[AdjustmentResult] = []
    for update in updates:
        if update.new_stock < 0:
            results.append(AdjustmentResult(
                product_id=update.product_id,
                success=False,
                error="Stock cannot be negative",
                error_kind=ErrorKind.CONFIGURATION,
            ))
            continue
        try:
            with context.store.exclusive():
                product = context.store.fetch_product(update.product_id)
                if product is None:
                    log.warning("Bulk adjustment skipped unknown product '%s'", update.product_id)
                    results.append(AdjustmentResult(
                        product_id=update.product_id,
                        success=False,
                        error="Product not found",
                        error_kind=ErrorKind.NOT_FOUND,
                    ))
                    continue

                difference = update.new_stock - product.current_stock
                transaction_id = None
                if difference != 0:
                    stamp = now_iso()
                    context.store.increment(
                        update.product_id, STOCK_COLUMN, difference, set_fields={"LastStockUpdate": stamp})
                    verb = "increased" if difference > 0 else "decreased"
                    transaction = append_stock_transaction(
                        context,
                        transaction_type=TransactionType.ADJUSTMENT,
                        product_id=update.product_id,
                        quantity=abs(difference),
                        unit_price=product.selling_price,
                        bill_id=None,
                        notes=update.reason or f"Bulk stock adjustment: {verb} by {abs(difference)}",
                        transaction_date=stamp,
                    )
                    transaction_id = transaction.transaction_id
                    context.events.publish(StockChanged(
                        product_id=update.product_id,
                        occurred_at=stamp,
                        delta=difference,
                        new_stock=product.current_stock + difference,
                        transaction_id=transaction_id,
                    ))
        except StoreError as exc:
            log.error("Bulk adjustment failed for '%s': %s", update.product_id, exc)
            results.append(AdjustmentResult(
                product_id=update.product_id,
                success=False,
                error=str(exc),
                error_kind=ErrorKind.STORE_FAILURE,
            ))
            continue

        results.append(AdjustmentResult(
            product_id=update.product_id,
            success=True,
            old_stock=product.current_stock,
            new_stock=product.current_stock + difference,
            difference=difference,
            transaction_id=transaction_id,
        ))

    report = BulkAdjustmentReport(results=results)
    log.info(
        "Bulk stock adjustment: %d/%d update(s) applied",
        report.summary.successful,
        report.summary.attempted,
    )
    return report


__all__ = [
    "LedgerItem",
    "ItemResult",
    "BatchSummary",
    "LedgerReport",
    "StockAdjustment",
    "AdjustmentResult",
    "BulkAdjustmentReport",
    "append_stock_transaction",
    "apply_stock_change",
    "bulk_adjust_stock",
]
