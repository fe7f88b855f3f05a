"""Product lifecycle: soft delete, restore, hard delete, and forced purge.

A product moves ``ACTIVE -> SOFT_DELETED -> ACTIVE`` or
``ACTIVE -> HARD_DELETED``. Whenever stock is written off, the audit
transaction documenting it is stored before the product changes state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence

from . import data_manager, log
from .constants import ErrorKind, LifecycleState, TransactionType
from .core_logic import RuntimeContext, now_iso
from .document_store import ReferenceCounts, StoreConflictError, StoreError
from .errors import MissingReferenceError, ReferenceConflictError
from .events import ProductDeleted, ProductPurged, ProductRestored
from .ledger import BatchSummary, append_stock_transaction

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class LifecycleItemResult:
    product_id: str
    success: bool
    product_name: Optional[str] = None
    state: Optional[LifecycleState] = None
    stock_at_change: Optional[int] = None
    audit_transaction_id: Optional[str] = None
    changed_at: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class LifecycleReport:
    """Per-id outcomes of a soft or hard delete batch."""

    results: List[LifecycleItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def errors(self) -> List[str]:
        return [result.error for result in self.results if result.error]

    @property
    def summary(self) -> BatchSummary:
        return BatchSummary.of(self.results)


@dataclass(frozen=True)
class ReferenceReport:
    product_id: str
    can_delete: bool
    references: ReferenceCounts
    blocking_reasons: List[str]


@dataclass(frozen=True)
class ForceDeleteResult:
    product_id: str
    product_name: str
    deleted_transactions: int


def _target_ids(product_id: str, consolidated_ids: Optional[Sequence[str]]) -> List[str]:
    return list(consolidated_ids) if consolidated_ids else [product_id]


def _failure(product_id: str, error: str, kind: ErrorKind, **extra: object) -> LifecycleItemResult:
    return LifecycleItemResult(product_id=product_id, success=False, error=error, error_kind=kind, **extra)


def _write_audit(context: RuntimeContext, product: data_manager.ProductRow, quantity: int, notes: str) -> str:
    transaction = append_stock_transaction(
        context,
        transaction_type=TransactionType.ADJUSTMENT,
        product_id=product.product_id,
        quantity=quantity,
        unit_price=ZERO,
        bill_id=None,
        notes=notes,
    )
    return transaction.transaction_id


def _soft_delete_one(context: RuntimeContext, product_id: str) -> LifecycleItemResult:
    product = context.store.fetch_product(product_id)
    if product is None:
        return _failure(product_id, f"Product {product_id} not found", ErrorKind.NOT_FOUND)
    if product.deleted:
        return _failure(
            product_id, f"Product {product.name} is already deleted", ErrorKind.CONFIGURATION,
            product_name=product.name)

    stock = product.current_stock
    audit_id = None
    try:
        if stock > 0:
            audit_id = _write_audit(
                context,
                product,
                stock,
                f'SOFT DELETE: Product "{product.name}" marked as deleted. Stock at deletion: {stock}',
            )
        deleted_at = now_iso()
        context.store.patch(
            data_manager.PRODUCTS_SHEET,
            product_id,
            set_fields={
                "Deleted": True,
                "DeletedAt": deleted_at,
                "CurrentStock": 0,
                "LastStockUpdate": deleted_at,
            },
        )
    except StoreError as exc:
        log.error("Soft delete failed for '%s': %s", product_id, exc)
        return _failure(
            product_id, f"Failed to soft delete product {product_id}: {exc}", ErrorKind.STORE_FAILURE,
            product_name=product.name, audit_transaction_id=audit_id)

    context.events.publish(ProductDeleted(
        product_id=product_id,
        occurred_at=deleted_at,
        abandoned_stock=stock,
        audit_transaction_id=audit_id,
    ))
    log.info("Soft deleted product '%s' (stock written off: %d)", product_id, stock)
    return LifecycleItemResult(
        product_id=product_id,
        success=True,
        product_name=product.name,
        state=LifecycleState.SOFT_DELETED,
        stock_at_change=stock,
        audit_transaction_id=audit_id,
        changed_at=deleted_at,
    )


def soft_delete_products(
    context: RuntimeContext,
    product_id: str,
    consolidated_ids: Optional[Sequence[str]] = None,
) -> LifecycleReport:
    """Hide products from the catalog, writing off their remaining stock.

    When ``consolidated_ids`` is given every id in it is processed instead of
    ``product_id`` alone. For each product with stock on hand an
    ``adjustment`` transaction recording the abandoned quantity is written
    first; the product is only marked deleted once that write succeeded.

    Args:
        context (RuntimeContext): Runtime context providing store and events.
        product_id (str): Product to delete.
        consolidated_ids (Sequence[str] | None): All member ids of a
            consolidated view, when deleting the whole group.

    Returns:
        LifecycleReport: One result per processed id plus a summary.
    """
    report = LifecycleReport([_soft_delete_one(context, target)
                              for target in _target_ids(product_id, consolidated_ids)])
    log.info(
        "Soft delete batch: %d/%d succeeded", report.summary.successful, report.summary.attempted)
    return report


def restore_product(context: RuntimeContext, product_id: str) -> LifecycleItemResult:
    """Make a soft-deleted product visible again.

    Stock is not replenished; a zero-quantity ``adjustment`` transaction is
    written to keep the audit trail continuous.
    """
    product = context.store.fetch_product(product_id)
    if product is None:
        return _failure(product_id, "Product not found", ErrorKind.NOT_FOUND)
    if not product.deleted:
        return _failure(product_id, "Product is not deleted", ErrorKind.CONFIGURATION,
                        product_name=product.name)

    restored_at = now_iso()
    try:
        context.store.patch(
            data_manager.PRODUCTS_SHEET,
            product_id,
            set_fields={"LastStockUpdate": restored_at},
            unset=("Deleted", "DeletedAt"),
        )
        audit_id = _write_audit(
            context, product, 0, f'RESTORE: Product "{product.name}" restored from soft delete')
    except StoreError as exc:
        log.error("Restore failed for '%s': %s", product_id, exc)
        return _failure(product_id, str(exc), ErrorKind.STORE_FAILURE, product_name=product.name)

    context.events.publish(ProductRestored(
        product_id=product_id, occurred_at=restored_at, audit_transaction_id=audit_id))
    log.info("Restored product '%s'", product_id)
    return LifecycleItemResult(
        product_id=product_id,
        success=True,
        product_name=product.name,
        state=LifecycleState.ACTIVE,
        stock_at_change=product.current_stock,
        audit_transaction_id=audit_id,
        changed_at=restored_at,
    )


def check_product_references(context: RuntimeContext, product_id: str) -> ReferenceReport:
    """Report which documents reference ``product_id`` and whether it may be deleted.

    Pending stock transactions and bills in a pending status block a hard
    delete; completed transactions and closed bills do not.
    """
    references = context.store.count_references(product_id)
    blocking: List[str] = []
    if references.active_transactions > 0:
        blocking.append(f"{references.active_transactions} pending transactions")
    if references.pending_bills > 0:
        blocking.append(f"{references.pending_bills} pending bills")
    return ReferenceReport(
        product_id=product_id,
        can_delete=not blocking,
        references=references,
        blocking_reasons=blocking,
    )


def ensure_deletable(context: RuntimeContext, product_id: str) -> ReferenceReport:
    """Raise :class:`ReferenceConflictError` when ``product_id`` may not be hard deleted."""
    product = context.store.fetch_product(product_id)
    if product is None:
        raise MissingReferenceError(f"Product {product_id} not found")
    report = check_product_references(context, product_id)
    if not report.can_delete:
        counts = {
            "active_transactions": report.references.active_transactions,
            "pending_bills": report.references.pending_bills,
        }
        raise ReferenceConflictError(product.name, report.blocking_reasons, counts)
    return report


def _delete_with_retry(context: RuntimeContext, product: data_manager.ProductRow) -> tuple[int, Optional[str]]:
    """Delete ``product`` retrying store failures with linear backoff.

    Returns:
        tuple[int, str | None]: Attempts made and the final error message,
            ``None`` when the delete succeeded.
    """
    max_attempts = context.settings.delete_max_attempts
    backoff = context.settings.delete_backoff_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            context.store.transaction().delete(data_manager.PRODUCTS_SHEET, product.product_id).commit()
            return attempt, None
        except StoreError as exc:
            log.warning("Delete attempt %d failed for '%s': %s", attempt, product.product_id, exc)
            if attempt < max_attempts:
                time.sleep(backoff * attempt)
                continue
            if isinstance(exc, StoreConflictError):
                return attempt, (
                    f"Cannot delete {product.name}: Product is referenced by other documents. "
                    "Please remove all references first."
                )
            return attempt, f"Failed to delete {product.name} after {max_attempts} attempts: {exc}"
    return max_attempts, f"Failed to delete {product.name} after {max_attempts} attempts"


def _hard_delete_one(context: RuntimeContext, product_id: str) -> LifecycleItemResult:
    product = context.store.fetch_product(product_id)
    if product is None:
        return _failure(product_id, f"Product {product_id} not found", ErrorKind.NOT_FOUND)
    if product.deleted:
        log.warning("Hard delete of soft deleted product '%s' refused", product_id)
        return _failure(
            product_id, f"Product {product.name} is soft deleted; restore it first", ErrorKind.CONFIGURATION,
            product_name=product.name)

    try:
        ensure_deletable(context, product_id)
    except ReferenceConflictError as exc:
        log.warning("Hard delete of '%s' blocked: %s", product_id, ", ".join(exc.blocking_reasons))
        return _failure(product_id, str(exc), ErrorKind.REFERENCE_CONFLICT, product_name=product.name)

    stock = product.current_stock
    audit_id = None
    if stock > 0:
        try:
            audit_id = _write_audit(
                context,
                product,
                stock,
                f'DELETION AUDIT: Product "{product.name}" removed from inventory. Final stock: {stock}',
            )
        except StoreError as exc:
            log.error("Audit write failed for '%s', delete skipped: %s", product_id, exc)
            return _failure(
                product_id, f"Failed to process product {product_id}: {exc}", ErrorKind.STORE_FAILURE,
                product_name=product.name)

    attempts, error = _delete_with_retry(context, product)
    if error is not None:
        log.error("Hard delete failed for '%s': %s", product_id, error)
        return _failure(
            product_id,
            error,
            ErrorKind.REFERENCE_CONFLICT if "referenced by other documents" in error else ErrorKind.STORE_FAILURE,
            product_name=product.name,
            audit_transaction_id=audit_id,
            attempts=attempts,
        )

    deleted_at = now_iso()
    context.events.publish(ProductPurged(product_id=product_id, occurred_at=deleted_at))
    log.info("Hard deleted product '%s' after %d attempt(s)", product_id, attempts)
    return LifecycleItemResult(
        product_id=product_id,
        success=True,
        product_name=product.name,
        state=LifecycleState.HARD_DELETED,
        stock_at_change=stock,
        audit_transaction_id=audit_id,
        changed_at=deleted_at,
        attempts=attempts,
    )


def hard_delete_products(
    context: RuntimeContext,
    product_id: str,
    consolidated_ids: Optional[Sequence[str]] = None,
) -> LifecycleReport:
    """Physically remove products that nothing pending refers to.

    Only active products qualify; a soft deleted product must be restored
    first. Reference conflicts fail the id immediately and are never retried. Stock
    on hand is documented with a ``DELETION AUDIT`` transaction before the
    delete. The delete itself is retried on store errors up to
    ``DeleteMaxAttempts`` times, sleeping ``DeleteBackoffSeconds * attempt``
    between attempts.

    Returns:
        LifecycleReport: One result per processed id plus a summary.
    """
    report = LifecycleReport([_hard_delete_one(context, target)
                              for target in _target_ids(product_id, consolidated_ids)])
    log.info(
        "Hard delete batch: %d/%d succeeded", report.summary.successful, report.summary.attempted)
    return report


def force_delete_product_destroying_audit_history(context: RuntimeContext, product_id: str) -> ForceDeleteResult:
    """Remove a product together with every stock transaction that mentions it.

    This destroys audit history and skips the reference check; bills keep
    their line items. All deletes are committed as one store transaction.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        StoreError: If the grouped delete cannot be committed.
    """
    product = context.store.fetch_product(product_id)
    if product is None:
        raise MissingReferenceError(f"Unknown product id: {product_id}")

    transactions = context.store.fetch_stock_transactions(product_id=product_id)
    log.warning(
        "Force deleting product '%s' and %d stock transaction(s); audit history will be lost",
        product_id,
        len(transactions),
    )
    group = context.store.transaction()
    for row in transactions:
        group.delete(data_manager.STOCK_TRANSACTIONS_SHEET, row.transaction_id)
    group.delete(data_manager.PRODUCTS_SHEET, product_id)
    group.commit()

    context.events.publish(ProductPurged(
        product_id=product_id,
        occurred_at=now_iso(),
        removed_transactions=len(transactions),
        forced=True,
    ))
    log.info('Force deleted product "%s" and %d related transactions', product.name, len(transactions))
    return ForceDeleteResult(
        product_id=product_id,
        product_name=product.name,
        deleted_transactions=len(transactions),
    )


__all__ = [
    "LifecycleItemResult",
    "LifecycleReport",
    "ReferenceReport",
    "ForceDeleteResult",
    "soft_delete_products",
    "restore_product",
    "check_product_references",
    "ensure_deletable",
    "hard_delete_products",
    "force_delete_product_destroying_audit_history",
]
