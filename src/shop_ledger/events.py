"""Domain events published by the ledger writer and the lifecycle manager.

Writers announce what happened (stock changed, product deleted, restored or
purged) through an :class:`EventBus`. Read-side consumers such as
:class:`StockProjection` or the runtime read cache subscribe to those events
instead of reaching into shared store state.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, Dict, List, Optional, Type

from . import log


@dataclass(frozen=True)
class DomainEvent:
    """Base class for everything published on the bus."""

    product_id: str
    occurred_at: str


@dataclass(frozen=True)
class StockChanged(DomainEvent):
    """A product's stock counter moved by ``delta`` to ``new_stock``."""

    delta: int
    new_stock: int
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None


@dataclass(frozen=True)
class ProductDeleted(DomainEvent):
    """A product was soft-deleted; ``abandoned_stock`` units were written off."""

    abandoned_stock: int
    audit_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ProductRestored(DomainEvent):
    """A soft-deleted product became visible again."""

    audit_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ProductPurged(DomainEvent):
    """A product row was physically removed from the store."""

    removed_transactions: int = 0
    forced: bool = False


Handler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous in-process publish/subscribe hub.

    Handlers subscribed to a base class also receive its subclasses. A
    handler that raises is logged and the remaining handlers still run; the
    publisher never sees the exception.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            matching = [
                handler
                for event_type, handlers in self._handlers.items()
                if isinstance(event, event_type)
                for handler in handlers
            ]
        log.debug("Publishing %s for product '%s' to %d handler(s)",
                  type(event).__name__, event.product_id, len(matching))
        for handler in matching:
            try:
                handler(event)
            except Exception:
                log.exception("Event handler %r failed for %s", handler, type(event).__name__)


class StockProjection:
    """Read model tracking the last known stock and visibility per product."""

    def __init__(self, bus: Optional[EventBus] = None) -> None:
        self._stock: Dict[str, int] = {}
        self._deleted: Dict[str, bool] = {}
        self._lock = threading.Lock()
        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(StockChanged, self._on_stock_changed)
        bus.subscribe(ProductDeleted, self._on_deleted)
        bus.subscribe(ProductRestored, self._on_restored)
        bus.subscribe(ProductPurged, self._on_purged)

    def stock_of(self, product_id: str) -> Optional[int]:
        with self._lock:
            return self._stock.get(product_id)

    def is_deleted(self, product_id: str) -> bool:
        with self._lock:
            return self._deleted.get(product_id, False)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stock)

    def _on_stock_changed(self, event: StockChanged) -> None:
        with self._lock:
            self._stock[event.product_id] = event.new_stock

    def _on_deleted(self, event: DomainEvent) -> None:
        with self._lock:
            self._stock[event.product_id] = 0
            self._deleted[event.product_id] = True

    def _on_restored(self, event: DomainEvent) -> None:
        with self._lock:
            self._deleted[event.product_id] = False

    def _on_purged(self, event: DomainEvent) -> None:
        with self._lock:
            self._stock.pop(event.product_id, None)
            self._deleted.pop(event.product_id, None)


__all__ = [
    "DomainEvent",
    "StockChanged",
    "ProductDeleted",
    "ProductRestored",
    "ProductPurged",
    "EventBus",
    "StockProjection",
]
