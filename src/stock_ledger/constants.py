"""Enumerations shared across the stock ledger modules.

The data access layer (DAL), the business logic layer (BLL), and the CLI all
refer to sheet names, movement kinds, and policies through this module so the
workbook layout has a single source of truth.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_LOW_STOCK_THRESHOLD = 5


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    TRANSACTION_ITEMS = "TransactionItems"
    STOCK_MOVEMENTS = "StockMovements"


class MovementType(str, Enum):
    """Enumerate the reasons a product's quantity can change."""

    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"
    SALE = "SALE"
    REVERSAL = "REVERSAL"
    INTAKE = "INTAKE"


class ExhaustionPolicy(str, Enum):
    """What a sale does to a product whose stock it drives to zero or below."""

    DELETE = "delete"
    RETAIN = "retain"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "SheetName",
    "MovementType",
    "ExhaustionPolicy",
]
