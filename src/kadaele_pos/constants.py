"""Enumerations shared across Kadaele POS modules.

Centralises domain constants so that the record store, the ledgers, the sync
engine, and the CLI rely on a single source of truth for collection keys,
statuses, and worksheet names.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Direct field edits are only accepted this long after a purchase is created.
EDIT_WINDOW = timedelta(hours=24)

# Stock levels below this threshold are reported as low stock.
LOW_STOCK_THRESHOLD = 10

DEFAULT_CATEGORY = "General"
ZERO = Decimal("0")


class PaymentType(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    CREDIT = "credit"


class PurchaseStatus(str, Enum):
    """Lifecycle states of a purchase; ``VOIDED`` and ``REFUNDED`` are terminal."""

    ACTIVE = "active"
    VOIDED = "voided"
    REFUNDED = "refunded"


class StockStatus(str, Enum):
    """Classification used by the stock report."""

    OUT_OF_STOCK = "Out of Stock"
    LOW_STOCK = "Low Stock"
    IN_STOCK = "In Stock"


class CollectionKey(str, Enum):
    """Enumerate the logical keys persisted by the record store."""

    GOODS = "goods"
    PURCHASES = "purchases"
    DEBTORS = "debtors"
    INVENTORY = "inventory"
    SYNC_QUEUE = "syncQueue"
    LAST_SYNC = "lastSync"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    GOODS = "Goods"
    PURCHASES = "Purchases"
    DEBTORS = "Debtors"
    INVENTORY = "Inventory"
    SYNC_QUEUE = "SyncQueue"
    META = "Meta"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "EDIT_WINDOW",
    "LOW_STOCK_THRESHOLD",
    "DEFAULT_CATEGORY",
    "ZERO",
    "PaymentType",
    "PurchaseStatus",
    "StockStatus",
    "CollectionKey",
    "SheetName",
]
