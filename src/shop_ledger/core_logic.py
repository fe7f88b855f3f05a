"""Runtime context and shared business helpers for the shop ledger.

This module wires configuration, the document store, and the event bus into a
single :class:`RuntimeContext` consumed by every service module. It also
keeps the memoized read caches that reporting and lookups rely on; the caches
are evicted whenever a domain event announces a mutation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION
from .document_store import StoreConflictError, WorkbookStore
from .errors import BusinessRuleViolation, MissingReferenceError
from .events import DomainEvent, EventBus, StockProjection


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, store, and event wiring used by services."""

    settings: data_manager.ConfigSettings
    store: WorkbookStore
    events: EventBus = field(default_factory=EventBus)
    projection: StockProjection = field(default_factory=StockProjection)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.projection.attach(self.events)
        self.events.subscribe(DomainEvent, self._on_domain_event)

    def _on_domain_event(self, event: DomainEvent) -> None:
        _invalidate_cache(self, "products", "transactions")


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def now_iso() -> str:
    return _resolve_timestamp().isoformat()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries that store precomputed query results,
    reducing repeated workbook scans between mutations.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating store state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking first.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products, ``visible``
            (not soft-deleted) products, and a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = context.store.fetch_products()
        bucket["all"] = all_products
        bucket["visible"] = [product for product in all_products if not product.deleted]
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug(
            "Populated products cache with %d entries (%d visible)",
            len(all_products),
            len(bucket["visible"]),
        )
    return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the stock transaction cache bucket on demand."""

    bucket = _get_cache_bucket(context, "transactions")
    if "all" not in bucket:
        all_transactions = context.store.fetch_stock_transactions()
        bucket["all"] = all_transactions
        bucket["by_id"] = {row.transaction_id: row for row in all_transactions}
        log.debug("Populated transactions cache with %d entries", len(all_transactions))
    return bucket


def build_context(settings: data_manager.ConfigSettings, workbook: Any) -> RuntimeContext:
    """Assemble a :class:`RuntimeContext` around an already opened workbook."""

    return RuntimeContext(settings=settings, store=WorkbookStore(workbook))


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the service modules.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext, *, include_deleted: bool = False) -> List[data_manager.ProductRow]:
    """Return cached product rows, hiding soft-deleted ones unless requested.

    Args:
        context (RuntimeContext): Runtime context providing store access and
            caches.
        include_deleted (bool): When ``True`` the result also contains
            soft-deleted products.

    Returns:
        list[data_manager.ProductRow]: Copy of the cached product dataset in
            sheet order.
    """
    cache = _ensure_products_cache(context)
    source = cache["all"] if include_deleted else cache["visible"]
    return list(source)


def list_stock_transactions(context: RuntimeContext, *, product_id: Optional[str] = None) -> List[data_manager.StockTransactionRow]:
    """Return the append-only audit trail, optionally for one product."""
    rows = _ensure_transactions_cache(context)["all"]
    if product_id is None:
        return list(rows)
    return [row for row in rows if row.product_id == product_id]


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the store.
    """
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}") from exc


def get_stock_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.StockTransactionRow:
    """Retrieve a stock transaction by its identifier.

    Raises:
        MissingReferenceError: If the audit trail lacks the supplied identifier.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}") from exc


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    name: str,
    brand: str,
    category: str,
    selling_price: Decimal,
    purchase_price: Decimal = Decimal("0.00"),
    specifications: Optional[Mapping[str, Any]] = None,
    current_stock: int = 0,
    minimum_stock: int = 0,
    reorder_level: int = 0,
    unit: str = "piece",
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Register a new product row.

    Catalog editing lives outside this package; this entry point exists so a
    shop can seed the workbook and so tests can build realistic fixtures.

    Raises:
        BusinessRuleViolation: If the id is already taken or a field is blank.
        ValueError: If stock thresholds or prices are negative.
    """
    if not product_id or not name.strip():
        raise BusinessRuleViolation("Product id and name are required")
    for label, value in (
        ("current_stock", current_stock),
        ("minimum_stock", minimum_stock),
        ("reorder_level", reorder_level),
    ):
        if value < 0:
            log.error("Product validation failed: %s=%s", label, value)
            raise ValueError(f"{label} must be zero or positive")
    require_nonnegative_money(selling_price)
    require_nonnegative_money(purchase_price)

    stamp = now_iso()
    record = data_manager.ProductRow(
        product_id=product_id,
        name=name.strip(),
        brand=brand,
        category=category,
        specifications=dict(specifications or {}),
        current_stock=int(current_stock),
        minimum_stock=int(minimum_stock),
        reorder_level=int(reorder_level),
        purchase_price=purchase_price,
        selling_price=selling_price,
        unit=unit,
        is_active=is_active,
        updated_at=stamp,
        last_stock_update=stamp,
    )
    try:
        context.store.create_product(record)
    except StoreConflictError as exc:
        raise BusinessRuleViolation(f"Product '{product_id}' already exists") from exc
    _invalidate_cache(context, "products")
    log.info("Registered product '%s' (%s)", product_id, record.name)
    return record


def generate_transaction_id(*, prefix: str = "TXN", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{random}``.

    The timestamp part keeps chronological ordering; the random suffix keeps
    identifiers unique when several items are written in the same
    microsecond from different worker threads.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk."""
    context.store.save(context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook, a
            new store and bus, and an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(context.settings, workbook)
