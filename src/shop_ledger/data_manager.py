"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the shop
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: converting rows to structured records and appending,
   updating, or removing individual rows.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
STOCK_TRANSACTIONS_SHEET = SheetName.STOCK_TRANSACTIONS.value
BILLS_SHEET = SheetName.BILLS.value

DEFAULT_ITEM_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_DELETE_MAX_ATTEMPTS = 3
DEFAULT_DELETE_BACKOFF_SECONDS = 1.0

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "Name",
        "Brand",
        "Category",
        "Specifications",
        "CurrentStock",
        "MinimumStock",
        "ReorderLevel",
        "PurchasePrice",
        "SellingPrice",
        "Unit",
        "IsActive",
        "Deleted",
        "DeletedAt",
        "UpdatedAt",
        "LastStockUpdate",
    ],
    STOCK_TRANSACTIONS_SHEET: [
        "TransactionID",
        "Type",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "TotalAmount",
        "BillID",
        "Notes",
        "Status",
        "TransactionDate",
    ],
    BILLS_SHEET: [
        "BillID",
        "BillNumber",
        "CustomerID",
        "ServiceType",
        "LocationType",
        "Status",
        "Items",
        "Subtotal",
        "HomeVisitFee",
        "RepairCharges",
        "LaborCharges",
        "TransportationFee",
        "TaxAmount",
        "DiscountAmount",
        "TotalAmount",
        "CreatedAt",
        "Notes",
    ],
}

KEY_COLUMNS: Mapping[str, str] = {
    PRODUCTS_SHEET: "ProductID",
    STOCK_TRANSACTIONS_SHEET: "TransactionID",
    BILLS_SHEET: "BillID",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    item_timeout_seconds: float = DEFAULT_ITEM_TIMEOUT_SECONDS
    max_workers: int = DEFAULT_MAX_WORKERS
    delete_max_attempts: int = DEFAULT_DELETE_MAX_ATTEMPTS
    delete_backoff_seconds: float = DEFAULT_DELETE_BACKOFF_SECONDS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    brand: str
    category: str
    specifications: Dict[str, Any] = field(default_factory=dict)
    current_stock: int = 0
    minimum_stock: int = 0
    reorder_level: int = 0
    purchase_price: Decimal = Decimal("0.00")
    selling_price: Decimal = Decimal("0.00")
    unit: str = "piece"
    is_active: bool = True
    deleted: bool = False
    deleted_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_stock_update: Optional[str] = None


@dataclass(frozen=True)
class StockTransactionRow:
    """In-memory view of a row from the ``StockTransactions`` sheet."""

    transaction_id: str
    transaction_type: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    bill_id: Optional[str]
    notes: Optional[str]
    status: str
    transaction_date: str


@dataclass(frozen=True)
class BillRow:
    """In-memory view of a row from the ``Bills`` sheet.

    ``items`` holds the post-deduplication line items as plain mappings so the
    row can be encoded into a single worksheet cell.
    """

    bill_id: str
    bill_number: str
    customer_id: str
    service_type: str
    location_type: str
    status: str
    items: tuple[Mapping[str, Any], ...]
    subtotal: Decimal
    home_visit_fee: Decimal
    repair_charges: Decimal
    labor_charges: Decimal
    transportation_fee: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    created_at: str
    notes: Optional[str] = None

    def product_ids(self) -> set[str]:
        """Return every product id referenced by the bill's line items."""
        return {str(item["productId"]) for item in self.items if item.get("productId")}


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Ledger]`` section is
    optional; each of its entries falls back to the module defaults. Relative
    ``DataFile`` paths are expanded against ``base_path`` when provided, or
    against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If a ``[Ledger]`` entry cannot be parsed or is out of range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    item_timeout = parser.getfloat(
        "Ledger", "ItemTimeoutSeconds", fallback=DEFAULT_ITEM_TIMEOUT_SECONDS)
    max_workers = parser.getint(
        "Ledger", "MaxWorkers", fallback=DEFAULT_MAX_WORKERS)
    delete_attempts = parser.getint(
        "Ledger", "DeleteMaxAttempts", fallback=DEFAULT_DELETE_MAX_ATTEMPTS)
    delete_backoff = parser.getfloat(
        "Ledger", "DeleteBackoffSeconds", fallback=DEFAULT_DELETE_BACKOFF_SECONDS)

    if item_timeout <= 0 or max_workers < 1 or delete_attempts < 1 or delete_backoff < 0:
        raise ValueError("Invalid [Ledger] configuration values")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        item_timeout_seconds=item_timeout,
        max_workers=max_workers,
        delete_max_attempts=delete_attempts,
        delete_backoff_seconds=delete_backoff,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Map header titles of ``sheet_name`` to 1-based column indices."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    """Yield non-empty data rows of ``sheet_name`` as value tuples."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_stock_transactions(workbook: Workbook) -> Iterable[StockTransactionRow]:
    """Stream audit records from the ``StockTransactions`` worksheet.

    Rows are returned in worksheet order, which is the order they were
    appended in.
    """

    for raw in iter_raw_rows(workbook, STOCK_TRANSACTIONS_SHEET):
        yield deserialize_stock_transaction(raw)


def iter_bills(workbook: Workbook) -> Iterable[BillRow]:
    """Iterate over bill records stored on the ``Bills`` worksheet."""

    for raw in iter_raw_rows(workbook, BILLS_SHEET):
        yield deserialize_bill(raw)


def append_row(workbook: Workbook, sheet_name: str, values: Sequence[object]) -> None:
    """Append already serialized ``values`` to ``sheet_name``."""

    workbook[sheet_name].append(list(values))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    headers = header_map(workbook, sheet_name)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def read_cell(workbook: Workbook, sheet_name: str, row_index: int, column: str) -> object:
    """Return the raw value stored under ``column`` for ``row_index``."""

    headers = header_map(workbook, sheet_name)
    if column not in headers:
        raise KeyError(f"Unknown column: {column}")
    return workbook[sheet_name].cell(row=row_index, column=headers[column]).value


def update_row(workbook: Workbook, sheet_name: str, row_index: int, *, field_values: Mapping[str, Any]) -> None:
    """Overwrite selected columns of an existing row.

    Every requested column is checked against the header before any cell is
    written, so an unknown column leaves the row untouched. A value of
    ``None`` clears the cell.

    Raises:
        KeyError: If any referenced column cannot be found.
    """

    headers = header_map(workbook, sheet_name)
    unknown = [name for name in field_values if name not in headers]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")

    sheet = workbook[sheet_name]
    for name, value in field_values.items():
        sheet.cell(row=row_index, column=headers[name], value=value)


def delete_row(workbook: Workbook, sheet_name: str, row_index: int) -> None:
    """Physically remove ``row_index`` from ``sheet_name``."""

    workbook[sheet_name].delete_rows(row_index, 1)


def to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def to_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def encode_specifications(specifications: Mapping[str, Any]) -> str:
    """Encode a specification map as canonical JSON with sorted keys."""

    return json.dumps(dict(specifications), sort_keys=True, separators=(",", ":"))


def decode_specifications(raw: object) -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    decoded = json.loads(str(raw))
    if not isinstance(decoded, dict):
        log.warning("Ignoring non-mapping specification payload: %r", raw)
        return {}
    return decoded


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.name,
        record.brand,
        record.category,
        encode_specifications(record.specifications),
        record.current_stock,
        record.minimum_stock,
        record.reorder_level,
        record.purchase_price,
        record.selling_price,
        record.unit,
        record.is_active,
        True if record.deleted else None,
        record.deleted_at,
        record.updated_at,
        record.last_stock_update,
    ]


def serialize_stock_transaction(record: StockTransactionRow) -> list[object]:
    """Convert a stock transaction into the ``StockTransactions`` column order.

    Numerical fields remain :class:`~decimal.Decimal` instances so Excel keeps
    their precision when the workbook is saved.
    """

    return [
        record.transaction_id,
        record.transaction_type,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.total_amount,
        record.bill_id,
        record.notes,
        record.status,
        record.transaction_date,
    ]


def serialize_bill(record: BillRow) -> list[object]:
    """Convert a bill dataclass into the ``Bills`` column ordering."""

    return [
        record.bill_id,
        record.bill_number,
        record.customer_id,
        record.service_type,
        record.location_type,
        record.status,
        json.dumps([dict(item) for item in record.items], default=str),
        record.subtotal,
        record.home_visit_fee,
        record.repair_charges,
        record.labor_charges,
        record.transportation_fee,
        record.tax_amount,
        record.discount_amount,
        record.total_amount,
        record.created_at,
        record.notes,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric prices become :class:`~decimal.Decimal`, stock counters become
    ``int``, and identifier/name fields are coerced to ``str`` to avoid
    surprises caused by Excel automatically interpreting numbers.
    """

    (
        product_id,
        name,
        brand,
        category,
        specifications,
        current_stock,
        minimum_stock,
        reorder_level,
        purchase_price,
        selling_price,
        unit,
        is_active,
        deleted,
        deleted_at,
        updated_at,
        last_stock_update,
    ) = tuple(raw_row) + (None,) * (16 - len(raw_row))

    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        brand=str(brand) if brand is not None else "",
        category=str(category) if category is not None else "",
        specifications=decode_specifications(specifications),
        current_stock=to_int(current_stock),
        minimum_stock=to_int(minimum_stock),
        reorder_level=to_int(reorder_level),
        purchase_price=to_decimal(purchase_price),
        selling_price=to_decimal(selling_price),
        unit=str(unit) if unit is not None else "piece",
        is_active=bool(is_active) if is_active is not None else True,
        deleted=bool(deleted),
        deleted_at=_to_optional_str(deleted_at),
        updated_at=_to_optional_str(updated_at),
        last_stock_update=_to_optional_str(last_stock_update),
    )


def deserialize_stock_transaction(raw_row: Sequence[object]) -> StockTransactionRow:
    """Convert a raw worksheet row into a strongly typed stock transaction."""

    (
        transaction_id,
        transaction_type,
        product_id,
        quantity,
        unit_price,
        total_amount,
        bill_id,
        notes,
        status,
        transaction_date,
    ) = tuple(raw_row) + (None,) * (10 - len(raw_row))

    return StockTransactionRow(
        transaction_id=str(transaction_id),
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        product_id=str(product_id) if product_id is not None else "",
        quantity=to_int(quantity),
        unit_price=to_decimal(unit_price),
        total_amount=to_decimal(total_amount),
        bill_id=_to_optional_str(bill_id),
        notes=_to_optional_str(notes),
        status=str(status) if status is not None else "",
        transaction_date=str(transaction_date) if transaction_date is not None else "",
    )


def deserialize_bill(raw_row: Sequence[object]) -> BillRow:
    """Convert a raw worksheet row into a strongly typed bill record."""

    (
        bill_id,
        bill_number,
        customer_id,
        service_type,
        location_type,
        status,
        items,
        subtotal,
        home_visit_fee,
        repair_charges,
        labor_charges,
        transportation_fee,
        tax_amount,
        discount_amount,
        total_amount,
        created_at,
        notes,
    ) = tuple(raw_row) + (None,) * (17 - len(raw_row))

    decoded_items = json.loads(str(items)) if items else []

    return BillRow(
        bill_id=str(bill_id),
        bill_number=str(bill_number) if bill_number is not None else "",
        customer_id=str(customer_id) if customer_id is not None else "",
        service_type=str(service_type) if service_type is not None else "",
        location_type=str(location_type) if location_type is not None else "",
        status=str(status) if status is not None else "",
        items=tuple(decoded_items),
        subtotal=to_decimal(subtotal),
        home_visit_fee=to_decimal(home_visit_fee),
        repair_charges=to_decimal(repair_charges),
        labor_charges=to_decimal(labor_charges),
        transportation_fee=to_decimal(transportation_fee),
        tax_amount=to_decimal(tax_amount),
        discount_amount=to_decimal(discount_amount),
        total_amount=to_decimal(total_amount),
        created_at=str(created_at) if created_at is not None else "",
        notes=_to_optional_str(notes),
    )
