"""Sold and loss figures derived from order history and stock snapshots.

``sold = prior ordered total - current stock``. A negative figure means the
shelf holds more than was ordered (an unrecorded delivery or a counting
mistake). It is reported as a loss/error line and is never clamped to zero.
Everything here is read-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .catalog import MasterCatalog
from .constants import SoldStatus
from .data_manager import OrderRecord, StockSnapshot
from .validation import ZERO, count_stocked_items, make_item_key, split_item_key, total_quantity


Quantities = Mapping[str, Decimal]


@dataclass(frozen=True)
class SoldLine:
    key: str
    category: str
    item: str
    ordered: Decimal
    current: Decimal
    sold: Decimal

    @property
    def is_loss(self) -> bool:
        return self.sold < ZERO

    @property
    def status(self) -> SoldStatus:
        return SoldStatus.LOSS if self.is_loss else SoldStatus.SOLD


@dataclass(frozen=True)
class SoldReport:
    """Per-item reconciliation in catalog order plus the headline total."""

    lines: List[SoldLine]
    total_sold: Decimal
    unknown_keys: List[str] = field(default_factory=list)

    def loss_lines(self) -> List[SoldLine]:
        return [line for line in self.lines if line.is_loss]

    def active_lines(self) -> List[SoldLine]:
        """Lines where something was ordered or is on the shelf."""

        return [line for line in self.lines if line.ordered != ZERO or line.current != ZERO]


@dataclass(frozen=True)
class OrderDaySummary:
    day: date
    order_count: int
    item_totals: Dict[str, Decimal]
    total_items: Decimal


def compute_sold(category: str, item: str, current_snapshot: Quantities, prior_ordered_total: Quantities) -> Decimal:
    """Units that left the shelf for one item; missing keys count as zero."""

    key = make_item_key(category, item)
    return prior_ordered_total.get(key, ZERO) - current_snapshot.get(key, ZERO)


def sold_calculator(current_snapshot: Quantities, prior_ordered_total: Quantities) -> Callable[[str], Decimal]:
    """Bind :func:`compute_sold` to one snapshot and order total, keyed by ``ItemKey``."""

    def calculate(key: str) -> Decimal:
        category, item = split_item_key(key)
        return compute_sold(category, item, current_snapshot, prior_ordered_total)

    return calculate


def prior_ordered_total(orders: Iterable[OrderRecord], store_id: str, day: date) -> Dict[str, Decimal]:
    """Sum every order placed for ``store_id`` on the UTC day before ``day``."""

    previous_day = day - timedelta(days=1)
    totals: Dict[str, Decimal] = {}
    for order in orders:
        if order.store_id != store_id:
            continue
        if order.order_date.astimezone(UTC).date() != previous_day:
            continue
        for key, quantity in order.quantities.items():
            totals[key] = totals.get(key, ZERO) + quantity
    return totals


def summarize(all_keys: Iterable[str], calculator: Callable[[str], Decimal]) -> Decimal:
    """Total of the positive sold figures; loss lines do not reduce it."""

    total = ZERO
    for key in all_keys:
        sold = calculator(key)
        if sold > ZERO:
            total += sold
    return total


def build_sold_report(catalog: MasterCatalog, current: Quantities, prior_ordered: Quantities) -> SoldReport:
    lines: List[SoldLine] = []
    for category, item in catalog.iter_items():
        key = make_item_key(category, item)
        lines.append(
            SoldLine(
                key=key,
                category=category,
                item=item,
                ordered=prior_ordered.get(key, ZERO),
                current=current.get(key, ZERO),
                sold=compute_sold(category, item, current, prior_ordered),
            )
        )
    total = summarize(catalog.item_keys(), sold_calculator(current, prior_ordered))
    unknown = sorted(key for key in current if not catalog.contains(key))
    return SoldReport(lines=lines, total_sold=total, unknown_keys=unknown)


def suggest_order_quantities(report: SoldReport) -> Dict[str, Decimal]:
    """Default order per item: what sold, or nothing for loss lines."""

    return {line.key: line.sold if line.sold > ZERO else ZERO for line in report.lines}


def summarize_orders_for_day(orders: Iterable[OrderRecord], day: date, *, store_id: Optional[str] = None) -> OrderDaySummary:
    item_totals: Dict[str, Decimal] = {}
    count = 0
    for order in orders:
        if store_id is not None and order.store_id != store_id:
            continue
        if order.order_date.astimezone(UTC).date() != day:
            continue
        count += 1
        for key, quantity in order.quantities.items():
            if quantity > ZERO:
                item_totals[key] = item_totals.get(key, ZERO) + quantity
    return OrderDaySummary(
        day=day,
        order_count=count,
        item_totals=dict(sorted(item_totals.items())),
        total_items=total_quantity(item_totals),
    )


def build_export(
    *,
    store_id: str,
    store_name: str,
    day: date,
    catalog: MasterCatalog,
    current: Optional[StockSnapshot],
    prior: Optional[StockSnapshot],
    prior_ordered: Quantities,
    exported_at: datetime,
) -> Dict[str, Any]:
    """Project one store-day into a JSON-ready document.

    ``priorStock`` is yesterday's snapshot, included for reference only;
    ``sold`` always follows the prior-orders formula.
    """

    current_quantities = current.quantities if current else {}
    prior_quantities = prior.quantities if prior else {}
    report = build_sold_report(catalog, current_quantities, prior_ordered)

    sold: Dict[str, Dict[str, Any]] = {}
    for line in report.active_lines():
        sold[line.key] = {
            "category": line.category,
            "item": line.item,
            "ordered": to_json_number(line.ordered),
            "current": to_json_number(line.current),
            "sold": to_json_number(line.sold),
            "status": line.status.value,
        }

    return {
        "store": store_id,
        "storeName": store_name,
        "date": day.isoformat(),
        "exportTimestamp": exported_at.isoformat(),
        "recordedBy": current.recorded_by if current else None,
        "currentStock": _json_quantities(current_quantities),
        "priorStock": _json_quantities(prior_quantities),
        "priorOrdered": _json_quantities(prior_ordered),
        "sold": sold,
        "summary": {
            "totalItems": count_stocked_items(current_quantities),
            "totalQuantity": to_json_number(total_quantity(current_quantities)),
            "totalSold": to_json_number(report.total_sold),
            "lossItems": len(report.loss_lines()),
            "unknownKeys": report.unknown_keys,
        },
    }


def to_json_number(value: Decimal) -> Any:
    """``Decimal`` to ``int`` when integral, ``float`` otherwise."""

    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _json_quantities(quantities: Quantities) -> Dict[str, Any]:
    return {key: to_json_number(value) for key, value in quantities.items()}
