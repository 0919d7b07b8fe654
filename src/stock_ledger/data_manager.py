"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
document store. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record types: typed views of snapshot, order and store documents and the
   converters between them and plain JSON documents.
3. Collection operations: reading and writing individual documents in the
   ``stock_entries``, ``orders``, ``stores`` and ``settings`` collections.

None of these helpers retry. Errors raised by the document store propagate
unchanged so the retry controller can classify them.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import log
from .catalog import MasterCatalog
from .constants import (
    CATALOG_DOCUMENT_ID,
    DEFAULT_BACKUP_TTL_SECONDS,
    DEFAULT_MAX_QUANTITY,
    DEFAULT_MAX_RETRIES,
    Collection,
)
from .document_store import Document, DocumentStore
from .validation import ZERO, coerce_quantity


CONFIG_FILE_NAME = "config.ini"
STOCK_ENTRIES = Collection.STOCK_ENTRIES.value
ORDERS = Collection.ORDERS.value
STORES = Collection.STORES.value
SETTINGS = Collection.SETTINGS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    app_name: str
    schema_version: str
    max_quantity: Decimal = DEFAULT_MAX_QUANTITY
    max_retries: int = DEFAULT_MAX_RETRIES
    backup_ttl_seconds: float = DEFAULT_BACKUP_TTL_SECONDS
    hub_store_id: Optional[str] = None
    satellite_store_id: Optional[str] = None


@dataclass(frozen=True)
class StockSnapshot:
    """Closing stock count for one store on one calendar day."""

    store_id: str
    day: date
    quantities: Dict[str, Decimal]
    recorded_by: str
    recorded_at: datetime


@dataclass(frozen=True)
class OrderRecord:
    """One replenishment order. Never rewritten once stored."""

    order_id: str
    store_id: str
    store_name: str
    order_date: datetime
    delivery_date: datetime
    quantities: Dict[str, Decimal]
    rendered_text: str
    snapshot_at_order_time: Dict[str, Decimal]
    advisory: Dict[str, Any] = field(default_factory=dict)
    recorded_by: Optional[str] = None


@dataclass(frozen=True)
class StoreRecord:
    """Entry of the store table."""

    store_id: str
    display_name: str
    firm_name: str
    area_code: str = ""
    created_at: Optional[datetime] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the ledger behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in any parent
            directory.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion
            and resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Ledger]`` and ``[Stores]`` are
    optional and fall back to the package defaults. Relative ``DataFile``
    entries are anchored at ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a ``[Ledger]`` value is not a number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        app_name = parser.get("System", "AppName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    max_quantity = Decimal(parser.get("Ledger", "MaxQuantity", fallback=str(DEFAULT_MAX_QUANTITY)))
    max_retries = parser.getint("Ledger", "MaxRetries", fallback=DEFAULT_MAX_RETRIES)
    backup_ttl = parser.getfloat("Ledger", "BackupTTLSeconds", fallback=DEFAULT_BACKUP_TTL_SECONDS)
    if max_retries < 1:
        raise ValueError("MaxRetries must be at least 1")

    hub_store = parser.get("Stores", "HubStore", fallback="").strip() or None
    satellite_store = parser.get("Stores", "SatelliteStore", fallback="").strip() or None

    return ConfigSettings(
        data_file=data_file_path,
        app_name=app_name,
        schema_version=schema_version,
        max_quantity=max_quantity,
        max_retries=max_retries,
        backup_ttl_seconds=backup_ttl,
        hub_store_id=hub_store,
        satellite_store_id=satellite_store,
    )


def related_store_id(settings: ConfigSettings, store_id: str) -> Optional[str]:
    """Return the satellite store tied to ``store_id`` when it is the hub."""

    if settings.hub_store_id and settings.satellite_store_id and store_id == settings.hub_store_id:
        return settings.satellite_store_id
    return None


# ---------------------------------------------------------------------------
# Stock snapshots
# ---------------------------------------------------------------------------


def snapshot_document_id(store_id: str, day: date) -> str:
    return f"{store_id}-{day.isoformat()}"


def get_snapshot(store: DocumentStore, store_id: str, day: date) -> Optional[StockSnapshot]:
    """Read the snapshot for ``(store_id, day)`` or ``None`` when absent."""

    document = store.get(STOCK_ENTRIES, snapshot_document_id(store_id, day))
    if document is None:
        return None
    return deserialize_snapshot(document, store_id=store_id, day=day)


def put_snapshot(
    store: DocumentStore,
    store_id: str,
    day: date,
    quantities: Mapping[str, Decimal],
    recorded_by: str,
    *,
    recorded_at: datetime,
) -> StockSnapshot:
    """Write the full snapshot for ``(store_id, day)``, replacing any previous one."""

    snapshot = StockSnapshot(
        store_id=store_id,
        day=day,
        quantities=dict(quantities),
        recorded_by=recorded_by,
        recorded_at=recorded_at,
    )
    store.put(STOCK_ENTRIES, snapshot_document_id(store_id, day), serialize_snapshot(snapshot))
    log.debug("Snapshot %s written with %d items", snapshot_document_id(store_id, day), len(snapshot.quantities))
    return snapshot


def serialize_snapshot(snapshot: StockSnapshot) -> Document:
    return {
        "storeId": snapshot.store_id,
        "date": snapshot.day.isoformat(),
        "stock": serialize_quantities(snapshot.quantities),
        "recordedBy": snapshot.recorded_by,
        "timestamp": snapshot.recorded_at.isoformat(),
    }


def deserialize_snapshot(document: Mapping[str, Any], *, store_id: str, day: date) -> StockSnapshot:
    """Convert a stored snapshot document into a :class:`StockSnapshot`.

    Unknown item keys are kept as-is; the catalog filter happens later.
    """

    return StockSnapshot(
        store_id=str(document.get("storeId") or store_id),
        day=day,
        quantities=deserialize_quantities(document.get("stock")),
        recorded_by=str(document.get("recordedBy") or ""),
        recorded_at=parse_timestamp(document.get("timestamp")),
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def put_order(store: DocumentStore, record: OrderRecord) -> None:
    store.put(ORDERS, record.order_id, serialize_order(record))
    log.debug("Order %s written for store %s", record.order_id, record.store_id)


def get_order(store: DocumentStore, order_id: str) -> Optional[OrderRecord]:
    document = store.get(ORDERS, order_id)
    if document is None:
        return None
    return deserialize_order(order_id, document)


def iter_orders(store: DocumentStore, store_id: Optional[str] = None) -> Iterable[OrderRecord]:
    """Yield stored orders, optionally restricted to one store."""

    for order_id, document in store.list(ORDERS):
        if store_id is not None and document.get("storeId") != store_id:
            continue
        yield deserialize_order(order_id, document)


def list_orders(store: DocumentStore, store_id: Optional[str] = None) -> List[OrderRecord]:
    """Return orders newest first."""

    return sorted(iter_orders(store, store_id), key=lambda record: record.order_date, reverse=True)


def serialize_order(record: OrderRecord) -> Document:
    return {
        "storeId": record.store_id,
        "storeName": record.store_name,
        "orderDate": record.order_date.isoformat(),
        "deliveryDate": record.delivery_date.isoformat(),
        "orderData": serialize_quantities(record.quantities),
        "orderText": record.rendered_text,
        "stockData": serialize_quantities(record.snapshot_at_order_time),
        "advisory": dict(record.advisory),
        "createdBy": record.recorded_by,
    }


def deserialize_order(order_id: str, document: Mapping[str, Any]) -> OrderRecord:
    advisory = document.get("advisory")
    recorded_by = document.get("createdBy")
    return OrderRecord(
        order_id=order_id,
        store_id=str(document.get("storeId") or ""),
        store_name=str(document.get("storeName") or ""),
        order_date=parse_timestamp(document.get("orderDate")),
        delivery_date=parse_timestamp(document.get("deliveryDate")),
        quantities=deserialize_quantities(document.get("orderData")),
        rendered_text=str(document.get("orderText") or ""),
        snapshot_at_order_time=deserialize_quantities(document.get("stockData")),
        advisory=dict(advisory) if isinstance(advisory, Mapping) else {},
        recorded_by=str(recorded_by) if recorded_by is not None else None,
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def get_catalog_document(store: DocumentStore) -> Optional[Document]:
    return store.get(SETTINGS, CATALOG_DOCUMENT_ID)


def put_catalog(store: DocumentStore, catalog: MasterCatalog, *, updated_at: datetime) -> None:
    """Overwrite the whole catalog document."""

    store.put(
        SETTINGS,
        CATALOG_DOCUMENT_ID,
        {"list": catalog.to_mapping(), "lastUpdated": updated_at.isoformat()},
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def iter_stores(store: DocumentStore) -> Iterable[StoreRecord]:
    for store_id, document in store.list(STORES):
        yield deserialize_store(store_id, document)


def list_stores(store: DocumentStore) -> List[StoreRecord]:
    """Return the store table ordered by display name."""

    return sorted(iter_stores(store), key=lambda record: record.display_name.lower())


def get_store(store: DocumentStore, store_id: str) -> Optional[StoreRecord]:
    document = store.get(STORES, store_id)
    if document is None:
        return None
    return deserialize_store(store_id, document)


def put_store(store: DocumentStore, record: StoreRecord) -> None:
    store.put(STORES, record.store_id, serialize_store(record))


def delete_store(store: DocumentStore, store_id: str) -> None:
    """Remove a store from the table; its snapshots and orders stay put."""

    store.delete(STORES, store_id)


def serialize_store(record: StoreRecord) -> Document:
    return {
        "name": record.display_name,
        "firmName": record.firm_name,
        "areaCode": record.area_code,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


def deserialize_store(store_id: str, document: Mapping[str, Any]) -> StoreRecord:
    display_name = str(document.get("name") or store_id)
    created_raw = document.get("createdAt")
    return StoreRecord(
        store_id=store_id,
        display_name=display_name,
        firm_name=str(document.get("firmName") or display_name),
        area_code=str(document.get("areaCode") or ""),
        created_at=parse_timestamp(created_raw) if created_raw else None,
    )


# ---------------------------------------------------------------------------
# Value converters
# ---------------------------------------------------------------------------


def serialize_quantities(quantities: Mapping[str, Decimal]) -> Dict[str, str]:
    """Store quantities as strings so no precision is lost in JSON."""

    return {key: str(value) for key, value in quantities.items()}


def deserialize_quantities(raw: Any) -> Dict[str, Decimal]:
    if not isinstance(raw, Mapping):
        return {}
    quantities: Dict[str, Decimal] = {}
    for key, value in raw.items():
        number = coerce_quantity(value)
        quantities[str(key)] = number if number is not None else ZERO
    return quantities


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO timestamp; naive values are taken to be UTC."""

    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str) and raw:
        parsed = datetime.fromisoformat(raw)
    else:
        return datetime.fromtimestamp(0, UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
