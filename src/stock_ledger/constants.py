"""Enumerations and defaults shared across the stock ledger modules.

Keeps collection names, roles, storage error codes and the seeded catalog
in one place so the document store adapters, the business layer and the CLI
agree on the identifiers they exchange.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Schema version expected in config.ini before any document is written.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_MAX_QUANTITY = Decimal("1000000")
QUANTITY_STEP = Decimal("0.01")
DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_CEILING_SECONDS = 32.0
DEFAULT_BACKUP_TTL_SECONDS = 3600.0

CATALOG_DOCUMENT_ID = "master_stock_list"
ITEM_KEY_SEPARATOR = "-"


class Collection(str, Enum):
    """Enumerate the document collections managed by the data layer."""

    STOCK_ENTRIES = "stock_entries"
    ORDERS = "orders"
    STORES = "stores"
    SETTINGS = "settings"


class UserRole(str, Enum):
    """Capability flags supplied by the identity collaborator."""

    ADMIN = "admin"
    STAFF = "staff"


class StorageErrorCode(str, Enum):
    """Error codes reported by document store backends."""

    UNAVAILABLE = "unavailable"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    ABORTED = "aborted"
    PERMISSION_DENIED = "permission-denied"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


RETRYABLE_ERROR_CODES = frozenset(
    {
        StorageErrorCode.UNAVAILABLE.value,
        StorageErrorCode.DEADLINE_EXCEEDED.value,
        StorageErrorCode.ABORTED.value,
    }
)

RETRYABLE_MESSAGE_MARKERS = ("network", "timeout", "connection")


class BackupKind(str, Enum):
    """Payload families written to the local backup cache."""

    STOCK = "stock"
    ORDER = "order"


class SoldStatus(str, Enum):
    """Display state of a reconciliation line."""

    SOLD = "SOLD"
    LOSS = "LOSS/ERROR"


DEFAULT_CATALOG: dict[str, list[str]] = {
    "MILKSHAKE": [
        "Mango",
        "Rose",
        "Pineapple",
        "Khus",
        "Vanilla",
        "Kesar",
        "Chocolate",
        "Butterscotch",
        "Kesar Mango",
        "Strawberry",
        "Fresh Sitaphal (Seasonal)",
        "Fresh Strawberry (Seasonal)",
    ],
    "ICE CREAM": [
        "Mango",
        "Pista",
        "Pineapple",
        "Vanilla",
        "Rose",
        "Orange",
        "Keshar Pista",
        "Chocolate",
        "Strawberry",
        "Butterscotch",
        "Dry Anjir",
        "Coffee Chips",
        "Chocolate Fudge Badam",
        "Chocolate Choco Chips",
        "Kaju Draksha",
        "Gulkand Badam",
        "Jagdalu",
        "VOP",
        "Peru",
        "Fresh Sitaphal",
        "Fresh Strawberry",
        "Fresh Mango Bites",
    ],
    "TOPPINGS": ["Dry Fruit", "Pista", "Badam", "Pista Powder", "Cherry"],
    "ICE CREAM DABBE": ["Ice Cream Dabee"],
    "MISC": ["Ice Cream Spoons", "Paper Straw", "Ice Creap Cup", "Ice Cream Container"],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_MAX_QUANTITY",
    "QUANTITY_STEP",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_BACKOFF_BASE_SECONDS",
    "DEFAULT_BACKOFF_CEILING_SECONDS",
    "DEFAULT_BACKUP_TTL_SECONDS",
    "CATALOG_DOCUMENT_ID",
    "ITEM_KEY_SEPARATOR",
    "Collection",
    "UserRole",
    "StorageErrorCode",
    "RETRYABLE_ERROR_CODES",
    "RETRYABLE_MESSAGE_MARKERS",
    "BackupKind",
    "SoldStatus",
    "DEFAULT_CATALOG",
]
