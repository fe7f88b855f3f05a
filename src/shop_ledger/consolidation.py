"""Merge catalog rows that describe the same physical item.

Shops often re-enter an item when a new batch arrives at a different price.
The consolidated view shows one row per logical item: the display fields and
prices of the most recently updated entry, with the stock of every entry
added together.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from . import log
from .data_manager import ProductRow


@dataclass(frozen=True)
class ConsolidatedProductView:
    """One logical item built from one or more product rows.

    ``product`` is the most recently updated member with ``current_stock``
    replaced by the group total and ``minimum_stock``/``reorder_level`` by the
    group maximum.
    """

    product: ProductRow
    total_entries: int
    original_ids: Tuple[str, ...]
    latest_update: Optional[str]

    @property
    def product_id(self) -> str:
        return self.product.product_id

    @property
    def current_stock(self) -> int:
        return self.product.current_stock

    @property
    def is_consolidated(self) -> bool:
        return self.total_entries > 1


def consolidation_key(product: ProductRow) -> str:
    """Return the grouping key for ``product``.

    Name and brand compare case-insensitively; the specification map is
    encoded with sorted keys so key order never matters.
    """
    return json.dumps(
        [product.name.lower(), product.brand.lower(), product.category, product.specifications],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _updated_sort_key(product: ProductRow) -> Tuple[datetime, str]:
    stamp = datetime.min.replace(tzinfo=UTC)
    if product.updated_at:
        try:
            parsed = datetime.fromisoformat(product.updated_at)
        except ValueError:
            log.warning("Unparseable UpdatedAt '%s' on product '%s'", product.updated_at, product.product_id)
        else:
            stamp = parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return stamp, product.product_id


def build_consolidated_view(products: Iterable[ProductRow]) -> List[ConsolidatedProductView]:
    """Group ``products`` into consolidated views.

    Soft-deleted rows are ignored. Groups are emitted in the order their key
    first appears when the input is sorted by product id, so the same set of
    rows always produces the same output regardless of input order. Ties on
    ``updated_at`` go to the larger product id.

    Args:
        products (Iterable[ProductRow]): Catalog rows, in any order.

    Returns:
        list[ConsolidatedProductView]: One view per logical item.
    """
    groups: Dict[str, List[ProductRow]] = {}
    for product in sorted(products, key=lambda row: row.product_id):
        if product.deleted:
            continue
        groups.setdefault(consolidation_key(product), []).append(product)

    views: List[ConsolidatedProductView] = []
    for members in groups.values():
        if len(members) == 1:
            only = members[0]
            views.append(ConsolidatedProductView(
                product=only,
                total_entries=1,
                original_ids=(only.product_id,),
                latest_update=only.updated_at,
            ))
            continue

        latest = max(members, key=_updated_sort_key)
        merged = replace(
            latest,
            current_stock=sum(member.current_stock for member in members),
            minimum_stock=max(member.minimum_stock for member in members),
            reorder_level=max(member.reorder_level for member in members),
        )
        views.append(ConsolidatedProductView(
            product=merged,
            total_entries=len(members),
            original_ids=tuple(member.product_id for member in members),
            latest_update=latest.updated_at,
        ))

    log.debug("Consolidated %d group(s)", len(views))
    return views


__all__ = ["ConsolidatedProductView", "consolidation_key", "build_consolidated_view"]
