"""Enumerations shared across the shop ledger modules.

Centralises domain constants so that the data access layer, the ledger
services, and the command-line front-end rely on a single source of truth for
collection names, transaction types, and lifecycle statuses.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionType(str, Enum):
    """Enumerate the stock transaction types recorded in the audit trail."""

    PURCHASE = "purchase"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    DAMAGE = "damage"


class TransactionStatus(str, Enum):
    """Enumerate stock transaction statuses.

    Rows written by this package are always ``completed``; ``pending`` rows
    may be created by other tools and block hard deletes.
    """

    PENDING = "pending"
    COMPLETED = "completed"


class StockDirection(str, Enum):
    """Direction of a ledger batch."""

    REDUCE = "reduce"
    RESTORE = "restore"

    @property
    def multiplier(self) -> int:
        return -1 if self is StockDirection.REDUCE else 1

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType.SALE if self is StockDirection.REDUCE else TransactionType.RETURN

    @property
    def verb(self) -> str:
        return "reduced" if self is StockDirection.REDUCE else "restored"


class PriceResolution(str, Enum):
    """How the deduplicator prices lines that collapse into one.

    ``FIRST_OCCURRENCE`` keeps the unit price of the first line seen for a
    key; later duplicate prices are ignored and never averaged.
    """

    FIRST_OCCURRENCE = "first_occurrence"


class ErrorKind(str, Enum):
    """Classify per-item failures reported by batch operations."""

    NOT_FOUND = "not_found"
    INSUFFICIENT_STOCK = "insufficient_stock"
    STORE_FAILURE = "store_failure"
    REFERENCE_CONFLICT = "reference_conflict"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"


class LifecycleState(str, Enum):
    """Lifecycle states a product moves through."""

    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"
    HARD_DELETED = "hard_deleted"


class BillStatus(str, Enum):
    """Enumerate bill workflow statuses."""

    DRAFT = "draft"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PENDING_BILL_STATUSES: frozenset[str] = frozenset(
    {BillStatus.DRAFT.value, BillStatus.CONFIRMED.value, BillStatus.IN_PROGRESS.value}
)


class ServiceType(str, Enum):
    """Kinds of work a bill can describe."""

    REPAIR = "repair"
    SALE = "sale"
    INSTALLATION = "installation"
    MAINTENANCE = "maintenance"
    CUSTOM = "custom"


class LocationType(str, Enum):
    """Where the service took place."""

    SHOP = "shop"
    HOME = "home"
    OFFICE = "office"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    STOCK_TRANSACTIONS = "StockTransactions"
    BILLS = "Bills"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionType",
    "TransactionStatus",
    "StockDirection",
    "PriceResolution",
    "ErrorKind",
    "LifecycleState",
    "BillStatus",
    "PENDING_BILL_STATUSES",
    "ServiceType",
    "LocationType",
    "SheetName",
]
