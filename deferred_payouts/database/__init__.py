"""Database package for deferred payouts."""
from .connection import Database
from .models import (
    Base,
    LedgerEntry,
    SaleRecord,
    Seller,
    Settlement,
)

__all__ = [
    "Base",
    "Database",
    "LedgerEntry",
    "SaleRecord",
    "Seller",
    "Settlement",
]
