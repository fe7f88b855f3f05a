"""Document store capability backed by the shop master workbook.

The ledger services never touch worksheets directly. They talk to a store
offering the handful of primitives a hosted document database exposes: batch
fetch by id with field projection, atomic increment of a numeric field,
create, patch (set/unset), delete, reference counting, and a best-effort
grouping of several writes into one commit.

:class:`WorkbookStore` implements those primitives on top of
:mod:`shop_ledger.data_manager`. Every call holds a re-entrant lock for its
whole duration, so an increment is a single indivisible step from the point of
view of any other caller sharing the store.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import PENDING_BILL_STATUSES, TransactionStatus


class StoreError(Exception):
    """Raised when the store cannot complete a request (transient by default)."""


class StoreConflictError(StoreError):
    """Raised when a write collides with existing documents or references."""


class DocumentNotFoundError(StoreError):
    """Raised when a write targets a document that does not exist."""


@dataclass(frozen=True)
class ReferenceCounts:
    """Documents that point at a product."""

    active_transactions: int
    pending_bills: int
    completed_transactions: int
    all_bills: int


class WorkbookStore:
    """Document store whose collections are sheets of an ``openpyxl`` workbook."""

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook
        self._lock = threading.RLock()

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the store lock so a sequence of calls lands as one unit."""
        with self._lock:
            yield

    def save(self, destination: Path) -> None:
        """Write the workbook to ``destination`` while no other call is running."""
        with self._lock:
            data_manager.save_workbook(self._workbook, destination=destination)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_products(self, ids: Optional[Iterable[str]] = None) -> List[data_manager.ProductRow]:
        """Return products whose id is in ``ids`` (all products when ``None``).

        Unknown ids are simply absent from the result.
        """
        wanted = None if ids is None else {str(product_id) for product_id in ids}
        with self._lock:
            return [
                product
                for product in data_manager.iter_products(self._workbook)
                if wanted is None or product.product_id in wanted
            ]

    def fetch_product(self, product_id: str) -> Optional[data_manager.ProductRow]:
        matches = self.fetch_products([product_id])
        return matches[0] if matches else None

    def fetch_projection(
        self,
        sheet_name: str,
        ids: Iterable[str],
        fields: Sequence[str],
    ) -> Dict[str, Dict[str, object]]:
        """Batch-fetch raw ``fields`` for the documents keyed by ``ids``.

        Args:
            sheet_name (str): Collection to read.
            ids (Iterable[str]): Document identifiers to look up.
            fields (Sequence[str]): Column titles to project.

        Returns:
            dict[str, dict[str, object]]: Projection per found document, keyed
                by document id. Missing ids are omitted.

        Raises:
            KeyError: If ``fields`` names an unknown column.
        """
        wanted = {str(doc_id) for doc_id in ids}
        key_column = data_manager.KEY_COLUMNS[sheet_name]
        with self._lock:
            headers = data_manager.header_map(self._workbook, sheet_name)
            unknown = [name for name in (key_column, *fields) if name not in headers]
            if unknown:
                raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")
            result: Dict[str, Dict[str, object]] = {}
            for raw in data_manager.iter_raw_rows(self._workbook, sheet_name):
                doc_id = str(raw[headers[key_column] - 1])
                if doc_id in wanted:
                    result[doc_id] = {name: raw[headers[name] - 1] for name in fields}
            return result

    def fetch_stock_transactions(self, *, product_id: Optional[str] = None) -> List[data_manager.StockTransactionRow]:
        with self._lock:
            return [
                transaction
                for transaction in data_manager.iter_stock_transactions(self._workbook)
                if product_id is None or transaction.product_id == product_id
            ]

    def fetch_bills(self) -> List[data_manager.BillRow]:
        with self._lock:
            return list(data_manager.iter_bills(self._workbook))

    def fetch_bill(self, bill_id: str) -> Optional[data_manager.BillRow]:
        for bill in self.fetch_bills():
            if bill.bill_id == bill_id:
                return bill
        return None

    def count_references(self, product_id: str) -> ReferenceCounts:
        """Count stock transactions and bills that reference ``product_id``."""
        with self._lock:
            transactions = self.fetch_stock_transactions(product_id=product_id)
            bills = [bill for bill in self.fetch_bills() if product_id in bill.product_ids()]
        return ReferenceCounts(
            active_transactions=sum(
                1 for row in transactions if row.status == TransactionStatus.PENDING.value),
            pending_bills=sum(1 for bill in bills if bill.status in PENDING_BILL_STATUSES),
            completed_transactions=sum(
                1 for row in transactions if row.status == TransactionStatus.COMPLETED.value),
            all_bills=len(bills),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_product(self, record: data_manager.ProductRow) -> None:
        self._create(data_manager.PRODUCTS_SHEET, record.product_id,
                     data_manager.serialize_product(record))

    def create_stock_transaction(self, record: data_manager.StockTransactionRow) -> None:
        self._create(data_manager.STOCK_TRANSACTIONS_SHEET, record.transaction_id,
                     data_manager.serialize_stock_transaction(record))

    def create_bill(self, record: data_manager.BillRow) -> None:
        self._create(data_manager.BILLS_SHEET, record.bill_id, data_manager.serialize_bill(record))

    def increment(
        self,
        product_id: str,
        column: str,
        delta: int,
        *,
        set_fields: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Atomically add ``delta`` to a numeric product field.

        The read of the current value and the write of the new one happen
        under the store lock, so concurrent increments never lose updates.
        ``set_fields`` are written in the same step.

        Raises:
            DocumentNotFoundError: If the product does not exist.
            KeyError: If ``column`` or a ``set_fields`` key is unknown.
        """
        sheet = data_manager.PRODUCTS_SHEET
        with self._lock:
            row_index = self._require_row(sheet, product_id)
            current = data_manager.read_cell(self._workbook, sheet, row_index, column)
            updated = data_manager.to_int(current) + int(delta)
            values: Dict[str, Any] = {column: updated}
            values.update(set_fields or {})
            data_manager.update_row(self._workbook, sheet, row_index, field_values=values)
        log.debug("Incremented %s.%s by %s", product_id, column, delta)

    def patch(
        self,
        sheet_name: str,
        doc_id: str,
        *,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset: Sequence[str] = (),
    ) -> None:
        """Set and/or clear fields of a single document.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """
        values: Dict[str, Any] = dict(set_fields or {})
        values.update({name: None for name in unset})
        with self._lock:
            row_index = self._require_row(sheet_name, doc_id)
            data_manager.update_row(self._workbook, sheet_name, row_index, field_values=values)

    def delete(self, sheet_name: str, doc_id: str) -> None:
        """Physically remove a document.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """
        with self._lock:
            row_index = self._require_row(sheet_name, doc_id)
            data_manager.delete_row(self._workbook, sheet_name, row_index)

    def transaction(self) -> "StoreTransaction":
        """Start a group of writes committed together via :meth:`StoreTransaction.commit`."""
        return StoreTransaction(self)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create(self, sheet_name: str, doc_id: str, values: Sequence[object]) -> None:
        key_column = data_manager.KEY_COLUMNS[sheet_name]
        with self._lock:
            if data_manager.locate_row(self._workbook, sheet_name, key_column, doc_id) is not None:
                raise StoreConflictError(f"Document already exists: {doc_id}")
            data_manager.append_row(self._workbook, sheet_name, values)

    def _require_row(self, sheet_name: str, doc_id: str) -> int:
        key_column = data_manager.KEY_COLUMNS[sheet_name]
        row_index = data_manager.locate_row(self._workbook, sheet_name, key_column, doc_id)
        if row_index is None:
            raise DocumentNotFoundError(f"Document not found: {sheet_name}/{doc_id}")
        return row_index

    def _exists(self, sheet_name: str, doc_id: str) -> bool:
        key_column = data_manager.KEY_COLUMNS[sheet_name]
        return data_manager.locate_row(self._workbook, sheet_name, key_column, doc_id) is not None


class StoreTransaction:
    """Queue of writes applied together under the store lock.

    Every target is checked before anything is written, so a missing document
    aborts the whole group without side effects.
    """

    def __init__(self, store: WorkbookStore) -> None:
        self._store = store
        self._deletes: List[tuple[str, str]] = []
        self._patches: List[tuple[str, str, Mapping[str, Any], Sequence[str]]] = []

    def delete(self, sheet_name: str, doc_id: str) -> "StoreTransaction":
        self._deletes.append((sheet_name, doc_id))
        return self

    def patch(
        self,
        sheet_name: str,
        doc_id: str,
        *,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset: Sequence[str] = (),
    ) -> "StoreTransaction":
        self._patches.append((sheet_name, doc_id, dict(set_fields or {}), tuple(unset)))
        return self

    def __len__(self) -> int:
        return len(self._deletes) + len(self._patches)

    def commit(self) -> int:
        """Apply the queued writes and return how many were applied.

        Raises:
            DocumentNotFoundError: If any queued target does not exist.
        """
        store = self._store
        with store._lock:
            targets = [(sheet, doc_id) for sheet, doc_id, *_ in self._patches] + self._deletes
            missing = [f"{sheet}/{doc_id}" for sheet, doc_id in targets if not store._exists(sheet, doc_id)]
            if missing:
                raise DocumentNotFoundError(f"Transaction aborted, documents not found: {', '.join(missing)}")
            operations: List[Callable[[], None]] = []
            for sheet, doc_id, set_fields, unset in self._patches:
                operations.append(
                    lambda s=sheet, d=doc_id, f=set_fields, u=unset: store.patch(s, d, set_fields=f, unset=u))
            for sheet, doc_id in self._deletes:
                operations.append(lambda s=sheet, d=doc_id: store.delete(s, d))
            for operation in operations:
                operation()
        log.debug("Committed store transaction with %d operations", len(operations))
        return len(operations)


__all__ = [
    "StoreError",
    "StoreConflictError",
    "DocumentNotFoundError",
    "ReferenceCounts",
    "WorkbookStore",
    "StoreTransaction",
]
