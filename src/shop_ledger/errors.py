"""Domain exceptions raised by the shop ledger services."""

from __future__ import annotations

from typing import Mapping, Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, bill, or transaction is unknown."""


class ReferenceConflictError(BusinessRuleViolation):
    """Raised when pending bills or transactions block a hard delete.

    The message names the first blocking reason; ``blocking_reasons`` keeps
    all of them.
    """

    def __init__(self, product_name: str, blocking_reasons: list[str], counts: Optional[Mapping[str, int]] = None) -> None:
        self.product_name = product_name
        self.blocking_reasons = list(blocking_reasons)
        self.counts = dict(counts or {})
        super().__init__(f"Cannot delete {product_name}: Has {self.blocking_reasons[0]}")


class ConfigurationError(BusinessRuleViolation):
    """Raised when a caller supplies a line or setting that cannot be processed."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "ReferenceConflictError",
    "ConfigurationError",
]
