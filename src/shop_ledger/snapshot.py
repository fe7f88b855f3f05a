"""Batch price and stock lookups over the product collection.

Both readers issue a single projected fetch for the whole id set; ids that
are not in the store are simply missing from the returned mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Optional

from . import data_manager, log
from .document_store import WorkbookStore

PRICE_FIELDS = ("PurchasePrice", "SellingPrice", "Unit", "UpdatedAt")
STOCK_FIELDS = ("Name", "CurrentStock", "MinimumStock", "SellingPrice", "Unit", "Deleted")


@dataclass(frozen=True)
class PriceInfo:
    purchase_price: Decimal
    selling_price: Decimal
    unit: str
    last_updated: Optional[str]


@dataclass(frozen=True)
class StockSnapshot:
    name: str
    current_stock: int
    minimum_stock: int
    selling_price: Decimal
    unit: str
    deleted: bool = False


def _unique(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(str(product_id) for product_id in ids if product_id))


def fetch_prices(store: WorkbookStore, ids: Iterable[str]) -> Dict[str, PriceInfo]:
    """Return current prices for ``ids`` in one batch read.

    Args:
        store (WorkbookStore): Store to query.
        ids (Iterable[str]): Product identifiers; duplicates and blanks are
            ignored.

    Returns:
        dict[str, PriceInfo]: Price information keyed by product id.
    """
    wanted = _unique(ids)
    if not wanted:
        return {}
    raw = store.fetch_projection(data_manager.PRODUCTS_SHEET, wanted, PRICE_FIELDS)
    log.debug("Fetched prices for %d of %d product(s)", len(raw), len(wanted))
    return {
        product_id: PriceInfo(
            purchase_price=data_manager.to_decimal(values["PurchasePrice"]),
            selling_price=data_manager.to_decimal(values["SellingPrice"]),
            unit=str(values["Unit"]) if values["Unit"] is not None else "piece",
            last_updated=str(values["UpdatedAt"]) if values["UpdatedAt"] is not None else None,
        )
        for product_id, values in raw.items()
    }


def fetch_stock_snapshot(store: WorkbookStore, ids: Iterable[str]) -> Dict[str, StockSnapshot]:
    """Return name, stock, and price data for ``ids`` in one batch read."""
    wanted = _unique(ids)
    if not wanted:
        return {}
    raw = store.fetch_projection(data_manager.PRODUCTS_SHEET, wanted, STOCK_FIELDS)
    return {
        product_id: StockSnapshot(
            name=str(values["Name"]) if values["Name"] is not None else "",
            current_stock=data_manager.to_int(values["CurrentStock"]),
            minimum_stock=data_manager.to_int(values["MinimumStock"]),
            selling_price=data_manager.to_decimal(values["SellingPrice"]),
            unit=str(values["Unit"]) if values["Unit"] is not None else "piece",
            deleted=bool(values["Deleted"]),
        )
        for product_id, values in raw.items()
    }


__all__ = ["PriceInfo", "StockSnapshot", "fetch_prices", "fetch_stock_snapshot"]
