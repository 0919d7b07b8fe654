"""Business logic layer for the stock ledger.

This module orchestrates the daily cycle: a stock count is sanitized and
saved, reconciled against the previous day's orders, and turned into the
next order. It consumes the data access layer for all I/O and routes every
snapshot and order write through the retry controller, which is the only
writer of those two collections.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .catalog import MasterCatalog, catalog_from_document
from .constants import EXPECTED_SCHEMA_VERSION, BackupKind, Collection, UserRole
from .document_store import DocumentStore, WorkbookDocumentStore, save_workbook
from .errors import BusinessRuleViolation, MissingReferenceError, ValidationError
from .ordering import Advisory, AdvisoryProvider, build_order_record
from .reconciliation import (
    OrderDaySummary,
    SoldReport,
    build_export,
    build_sold_report,
    prior_ordered_total,
    suggest_order_quantities,
    summarize_orders_for_day,
)
from .retry import BackupCache, RetryController, RetryPolicy, SaveOutcome, backup_key, order_backup_key
from .validation import count_stocked_items, sanitize_snapshot, validate_entry_date, validate_store_name


CATALOG_BUCKET = "catalog"
STORES_BUCKET = "stores"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the document store and the retry controller."""

    settings: data_manager.ConfigSettings
    store: DocumentStore
    retry: RetryController
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _subscriptions: List[Callable[[], None]] = field(default_factory=list, repr=False, compare=False)

    @property
    def backup_cache(self) -> BackupCache:
        return self.retry.backup_cache

    def close(self) -> None:
        """Drop the watch subscriptions registered for cache invalidation."""

        while self._subscriptions:
            self._subscriptions.pop()()


@dataclass(frozen=True)
class Actor:
    """Identity supplied by the authentication collaborator."""

    user_id: str
    role: UserRole = UserRole.STAFF

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN


@dataclass(frozen=True)
class StockSaveResult:
    outcome: SaveOutcome
    warnings: List[str]

    @property
    def snapshot(self) -> Optional[data_manager.StockSnapshot]:
        return self.outcome.result if self.outcome.succeeded else None


@dataclass(frozen=True)
class OrderResult:
    outcome: SaveOutcome
    record: data_manager.OrderRecord
    warnings: List[str]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket ``name``, creating it on first use."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets so the next read goes back to the store."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    store: DocumentStore,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RuntimeContext:
    """Wire settings and a document store into a :class:`RuntimeContext`.

    The catalog and store table are cached on the context. Watch
    subscriptions on the ``settings`` and ``stores`` collections evict those
    caches whenever either collection changes.

    Args:
        settings (ConfigSettings): Parsed configuration.
        store (DocumentStore): Backend holding every collection.
        sleep (Callable[[float], None]): Backoff sleep, replaced in tests.
        clock (Callable[[], float]): Monotonic clock for backup expiry.

    Returns:
        RuntimeContext: Context ready for the orchestration functions.
    """

    backup_cache = BackupCache(settings.backup_ttl_seconds, clock=clock)
    retry = RetryController(RetryPolicy(max_retries=settings.max_retries), backup_cache=backup_cache, sleep=sleep)
    context = RuntimeContext(settings=settings, store=store, retry=retry)

    for collection, bucket in ((Collection.SETTINGS, CATALOG_BUCKET), (Collection.STORES, STORES_BUCKET)):
        context._subscriptions.append(store.watch(collection.value, _invalidator(context, bucket)))
    return context


def _invalidator(context: RuntimeContext, bucket: str) -> Callable[[str, str, Optional[Dict[str, Any]]], None]:
    def on_change(collection: str, doc_id: str, document: Optional[Dict[str, Any]]) -> None:
        _invalidate_cache(context, bucket)

    return on_change


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load ``config.ini`` and open the workbook-backed document store.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookDocumentStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to touch storage when ``config.ini`` declares another schema.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Master catalog
# ---------------------------------------------------------------------------


def get_catalog(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> MasterCatalog:
    """Return the master catalog, seeding the default one when none is stored."""

    bucket = _get_cache_bucket(context, CATALOG_BUCKET)
    if "catalog" not in bucket:
        catalog = catalog_from_document(data_manager.get_catalog_document(context.store))
        if catalog is None:
            catalog = MasterCatalog.default()
            data_manager.put_catalog(context.store, catalog, updated_at=_resolve_timestamp(timestamp))
            log.info("Seeded default catalog with %d categories", len(catalog.categories()))
            bucket = _get_cache_bucket(context, CATALOG_BUCKET)
        bucket["catalog"] = catalog
    return bucket["catalog"]


def add_catalog_item(context: RuntimeContext, category: str, item: str, *, timestamp: Optional[datetime] = None) -> MasterCatalog:
    updated = get_catalog(context).add_item(category, item)
    data_manager.put_catalog(context.store, updated, updated_at=_resolve_timestamp(timestamp))
    _invalidate_cache(context, CATALOG_BUCKET)
    return updated


def remove_catalog_item(context: RuntimeContext, category: str, item: str, *, timestamp: Optional[datetime] = None) -> MasterCatalog:
    updated = get_catalog(context).remove_item(category, item)
    data_manager.put_catalog(context.store, updated, updated_at=_resolve_timestamp(timestamp))
    _invalidate_cache(context, CATALOG_BUCKET)
    return updated


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def _ensure_stores_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, STORES_BUCKET)
    if "all" not in bucket:
        all_stores = data_manager.list_stores(context.store)
        bucket["all"] = all_stores
        bucket["by_id"] = {record.store_id: record for record in all_stores}
        log.debug("Populated stores cache with %d entries", len(all_stores))
    return bucket


def list_stores(context: RuntimeContext) -> List[data_manager.StoreRecord]:
    return list(_ensure_stores_cache(context)["all"])


def get_store(context: RuntimeContext, store_id: str) -> data_manager.StoreRecord:
    """Resolve a store by id.

    Raises:
        MissingReferenceError: If ``store_id`` is not in the store table.
    """

    try:
        return _ensure_stores_cache(context)["by_id"][store_id]
    except KeyError as exc:
        log.warning("Store lookup failed for id '%s'", store_id)
        raise MissingReferenceError(f"Unknown store id: {store_id}", context="Store Management") from exc


def store_slug(display_name: str) -> str:
    """Derive a store id: lower case, whitespace to ``-``, other symbols dropped."""

    slug = re.sub(r"\s+", "-", display_name.lower())
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    if not slug.strip("-"):
        raise ValidationError("Store name must contain letters or digits", context="Store Management")
    return slug


def add_store(
    context: RuntimeContext,
    display_name: str,
    *,
    firm_name: Optional[str] = None,
    area_code: str = "",
    timestamp: Optional[datetime] = None,
) -> data_manager.StoreRecord:
    name = validate_store_name(display_name)
    store_id = store_slug(name)
    if store_id in _ensure_stores_cache(context)["by_id"]:
        raise BusinessRuleViolation("A store with this name already exists", context="Store Management")

    record = data_manager.StoreRecord(
        store_id=store_id,
        display_name=name,
        firm_name=(firm_name or "").strip() or name,
        area_code=area_code.strip(),
        created_at=_resolve_timestamp(timestamp),
    )
    data_manager.put_store(context.store, record)
    _invalidate_cache(context, STORES_BUCKET)
    log.info("Added store '%s' (%s)", record.display_name, record.store_id)
    return record


def remove_store(context: RuntimeContext, store_id: str) -> None:
    """Delete a store from the table; its history stays in storage."""

    get_store(context, store_id)
    data_manager.delete_store(context.store, store_id)
    _invalidate_cache(context, STORES_BUCKET)
    log.info("Removed store '%s'", store_id)


def _store_name(context: RuntimeContext, store_id: str) -> str:
    record = _ensure_stores_cache(context)["by_id"].get(store_id)
    return record.display_name if record else store_id


def related_store_name(context: RuntimeContext, store_id: str) -> Optional[str]:
    """Display name of the configured satellite when ``store_id`` is the hub."""

    related_id = data_manager.related_store_id(context.settings, store_id)
    if related_id is None:
        return None
    record = _ensure_stores_cache(context)["by_id"].get(related_id)
    return record.display_name if record else None


# ---------------------------------------------------------------------------
# Stock snapshots
# ---------------------------------------------------------------------------


def load_stock(context: RuntimeContext, store_id: str, day: date) -> Optional[data_manager.StockSnapshot]:
    return data_manager.get_snapshot(context.store, store_id, day)


def save_stock(
    context: RuntimeContext,
    store_id: str,
    day: date,
    raw_quantities: Mapping[str, Any],
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> StockSaveResult:
    """Sanitize and durably store the closing stock for ``(store_id, day)``.

    Sanitization warnings are returned, never raised. A snapshot with no
    positive quantity is rejected before any write. Transient storage
    failures are retried; when the budget runs out the payload stays in the
    backup cache and the outcome is ``FAILED``.

    Args:
        context (RuntimeContext): Active runtime context.
        store_id (str): Store the count belongs to.
        day (date): Calendar day of the count; not in the future and not
            more than a year old.
        raw_quantities (Mapping[str, Any]): User-entered counts keyed by
            ``ItemKey``.
        actor (Actor): Person recording the count.
        timestamp (datetime | None): Recording instant, defaults to now.

    Returns:
        StockSaveResult: Retry outcome plus sanitization warnings.

    Raises:
        ValidationError: If the date or the raw map is invalid.
        BusinessRuleViolation: If no item has a positive quantity.
        StorageError: For non-retryable storage failures.
    """

    recorded_at = _resolve_timestamp(timestamp)
    entry_day = validate_entry_date(day, today=recorded_at.date())
    sanitized, warnings = sanitize_snapshot(raw_quantities, max_quantity=context.settings.max_quantity)
    for warning in warnings:
        log.warning("Stock entry for %s on %s: %s", store_id, entry_day, warning)
    if count_stocked_items(sanitized) == 0:
        raise BusinessRuleViolation("Cannot save empty stock data", context="Stock Saving")

    return _write_stock(context, store_id, entry_day, sanitized, actor.user_id, recorded_at, warnings)


def retry_stock_from_backup(
    context: RuntimeContext,
    store_id: str,
    day: date,
    *,
    timestamp: Optional[datetime] = None,
) -> StockSaveResult:
    """Replay a snapshot save whose retries were exhausted earlier.

    Raises:
        MissingReferenceError: If no live backup exists for the key.
    """

    key = backup_key(BackupKind.STOCK, store_id, day)
    payload = context.backup_cache.get(key)
    if payload is None:
        raise MissingReferenceError(
            f"No backup found for {store_id} on {day.isoformat()}",
            context="Stock Saving",
        )
    quantities = data_manager.deserialize_quantities(payload.get("stock"))
    recorded_by = str(payload.get("recordedBy") or "")
    log.info("Retrying stock save for %s on %s from backup", store_id, day)
    return _write_stock(context, store_id, day, quantities, recorded_by, _resolve_timestamp(timestamp), [])


def _write_stock(
    context: RuntimeContext,
    store_id: str,
    day: date,
    quantities: Mapping[str, Decimal],
    recorded_by: str,
    recorded_at: datetime,
    warnings: List[str],
) -> StockSaveResult:
    payload = {
        "storeId": store_id,
        "date": day.isoformat(),
        "stock": data_manager.serialize_quantities(quantities),
        "recordedBy": recorded_by,
    }
    outcome = context.retry.execute(
        lambda: data_manager.put_snapshot(
            context.store, store_id, day, quantities, recorded_by, recorded_at=recorded_at
        ),
        label=f"Stock save {store_id} {day.isoformat()}",
        backup_key=backup_key(BackupKind.STOCK, store_id, day),
        payload=payload,
    )
    if outcome.succeeded:
        log.info(
            "Saved stock for %s on %s (%d items stocked)",
            store_id,
            day,
            count_stocked_items(quantities),
        )
    return StockSaveResult(outcome=outcome, warnings=list(warnings))


# ---------------------------------------------------------------------------
# Reconciliation and orders
# ---------------------------------------------------------------------------


def sold_report(context: RuntimeContext, store_id: str, day: date) -> SoldReport:
    """Reconcile ``day``'s stock for ``store_id`` against yesterday's orders."""

    snapshot = load_stock(context, store_id, day)
    current = snapshot.quantities if snapshot else {}
    prior = prior_ordered_total(data_manager.iter_orders(context.store, store_id), store_id, day)
    report = build_sold_report(get_catalog(context), current, prior)
    if report.unknown_keys:
        log.info("Snapshot %s/%s has %d keys outside the catalog", store_id, day, len(report.unknown_keys))
    return report


def suggest_order(context: RuntimeContext, store_id: str, day: date) -> Dict[str, Decimal]:
    return suggest_order_quantities(sold_report(context, store_id, day))


def create_order(
    context: RuntimeContext,
    store_id: str,
    quantities: Mapping[str, Any],
    actor: Actor,
    *,
    advisory: Optional[Advisory] = None,
    advisory_provider: Optional[AdvisoryProvider] = None,
    timestamp: Optional[datetime] = None,
) -> OrderResult:
    """Render and store a new order for ``store_id``.

    The order id is derived from the store and creation instant before the
    first attempt, so a retried write that already landed overwrites the
    same document instead of adding a second order.

    Args:
        context (RuntimeContext): Active runtime context.
        store_id (str): Store placing the order.
        quantities (Mapping[str, Any]): Requested quantities per ``ItemKey``.
        actor (Actor): Person finalizing the order.
        advisory (Advisory | None): Pre-fetched holiday/weather notes.
        advisory_provider (AdvisoryProvider | None): Consulted for the
            delivery day when ``advisory`` is not given.
        timestamp (datetime | None): Order instant, defaults to now.

    Returns:
        OrderResult: Retry outcome, the order record and sanitization
            warnings.

    Raises:
        MissingReferenceError: If ``store_id`` is not in the store table.
    """

    store_record = get_store(context, store_id)
    created_at = _resolve_timestamp(timestamp)
    sanitized, warnings = sanitize_snapshot(quantities, max_quantity=context.settings.max_quantity)
    snapshot = load_stock(context, store_id, created_at.date())

    if advisory is None:
        if advisory_provider is not None:
            advisory = advisory_provider.advisory_for((created_at + timedelta(days=1)).date())
        else:
            advisory = Advisory()

    record = build_order_record(
        store_id=store_id,
        store_name=store_record.display_name,
        catalog=get_catalog(context),
        quantities=sanitized,
        snapshot=snapshot.quantities if snapshot else {},
        advisory=advisory,
        created_at=created_at,
        recorded_by=actor.user_id,
        related_store_name=related_store_name(context, store_id),
    )
    return _write_order(context, record, warnings)


def retry_order_from_backup(context: RuntimeContext, store_id: str, order_id: str) -> OrderResult:
    """Replay an order write whose retries were exhausted earlier.

    The order keeps its original id, timestamps and rendered text.

    Raises:
        MissingReferenceError: If no live backup exists for the order.
    """

    payload = context.backup_cache.get(order_backup_key(store_id, order_id))
    if payload is None:
        raise MissingReferenceError(f"No backup found for order {order_id}", context="Ordering")
    record = data_manager.deserialize_order(order_id, payload)
    log.info("Retrying order '%s' for store '%s' from backup", order_id, store_id)
    return _write_order(context, record, [])


def _write_order(context: RuntimeContext, record: data_manager.OrderRecord, warnings: List[str]) -> OrderResult:
    outcome = context.retry.execute(
        lambda: data_manager.put_order(context.store, record),
        label=f"Order save {record.order_id}",
        backup_key=order_backup_key(record.store_id, record.order_id),
        payload=data_manager.serialize_order(record),
    )
    if outcome.succeeded:
        log.info("Saved order '%s' for store '%s'", record.order_id, record.store_id)
    return OrderResult(outcome=outcome, record=record, warnings=list(warnings))


def list_orders(context: RuntimeContext, store_id: Optional[str] = None) -> List[data_manager.OrderRecord]:
    return data_manager.list_orders(context.store, store_id)


def order_stats(context: RuntimeContext, day: date, *, store_id: Optional[str] = None) -> OrderDaySummary:
    return summarize_orders_for_day(data_manager.iter_orders(context.store, store_id), day, store_id=store_id)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_snapshot(
    context: RuntimeContext,
    store_id: str,
    day: date,
    *,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Read-only JSON projection of one store-day."""

    current = load_stock(context, store_id, day)
    prior = load_stock(context, store_id, day - timedelta(days=1))
    prior_ordered = prior_ordered_total(data_manager.iter_orders(context.store, store_id), store_id, day)
    return build_export(
        store_id=store_id,
        store_name=_store_name(context, store_id),
        day=day,
        catalog=get_catalog(context),
        current=current,
        prior=prior,
        prior_ordered=prior_ordered,
        exported_at=_resolve_timestamp(timestamp),
    )


def write_export_workbook(export: Mapping[str, Any], destination: Path) -> Path:
    """Write an :func:`export_snapshot` document to an ``.xlsx`` file.

    The workbook holds a ``Summary`` sheet with the headline figures and an
    ``Items`` sheet with one row per reconciled item.
    """

    workbook = openpyxl.Workbook()
    summary_sheet = workbook.active
    summary_sheet.title = "Summary"
    bold_font = Font(bold=True)

    rows = [
        ("Store", export.get("storeName") or export.get("store")),
        ("Date", export.get("date")),
        ("Exported At", export.get("exportTimestamp")),
    ]
    rows.extend((key, value) for key, value in export.get("summary", {}).items() if key != "unknownKeys")
    for label, value in rows:
        summary_sheet.append([label, value])
        summary_sheet.cell(row=summary_sheet.max_row, column=1).font = bold_font

    items_sheet = workbook.create_sheet(title="Items")
    headers = ["Item Key", "Category", "Item", "Prior Stock", "Ordered", "Current", "Sold", "Status"]
    items_sheet.append(headers)
    for cell in items_sheet[1]:
        cell.font = bold_font
    prior_stock = export.get("priorStock", {})
    for key, line in export.get("sold", {}).items():
        items_sheet.append(
            [
                key,
                line["category"],
                line["item"],
                prior_stock.get(key, 0),
                line["ordered"],
                line["current"],
                line["sold"],
                line["status"],
            ]
        )

    save_workbook(workbook, destination)
    resolved = Path(destination).expanduser().resolve()
    log.info("Export written to '%s'", resolved)
    return resolved
