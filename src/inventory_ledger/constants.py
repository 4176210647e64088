"""Enumerations shared across the inventory ledger modules.

Centralises domain constants so that the data access layer (DAL), the
valuation engine, the business logic layer (BLL), and the CLI rely on a
single source of truth for critical identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionType(str, Enum):
    """Enumerate the two kinds of stock movement recorded in the ledger."""

    ENTRY = "entry"
    EXIT = "exit"


class ValuationMethod(str, Enum):
    """Enumerate the supported inventory costing conventions."""

    FIFO = "FIFO"
    LIFO = "LIFO"
    WEIGHTED = "WEIGHTED"

    @classmethod
    def parse(cls, raw: str) -> "ValuationMethod":
        """Resolve a method name, accepting the PEPS/UEPS aliases.

        Raises:
            ValueError: If ``raw`` names no supported method.
        """

        key = raw.strip().upper()
        key = _METHOD_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError as exc:
            raise ValueError(f"Unsupported valuation method: {raw}") from exc


_METHOD_ALIASES = {
    "PEPS": "FIFO",
    "UEPS": "LIFO",
    "WAC": "WEIGHTED",
    "AVERAGE": "WEIGHTED",
}


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CATEGORIES = "Categories"
    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionType",
    "ValuationMethod",
    "SheetName",
]
