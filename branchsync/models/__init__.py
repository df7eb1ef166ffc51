"""SQLAlchemy models for a branch store."""

from branchsync.models.product import Product
from branchsync.models.stock import StockMovement, MovementReason
from branchsync.models.sale import Sale, SaleLineItem, DiscountType
from branchsync.models.purchase import Purchase, PurchaseLineItem
from branchsync.models.expense import Expense
from branchsync.models.sync_ledger import (
    SyncLedgerEntry,
    EntityVersion,
    LedgerSyncStatus,
    SyncOperation,
)

__all__ = [
    "Product",
    "StockMovement",
    "MovementReason",
    "Sale",
    "SaleLineItem",
    "DiscountType",
    "Purchase",
    "PurchaseLineItem",
    "Expense",
    "SyncLedgerEntry",
    "EntityVersion",
    "LedgerSyncStatus",
    "SyncOperation",
]
