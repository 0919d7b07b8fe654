"""Order text rendering and order record assembly."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from .catalog import MasterCatalog
from .data_manager import OrderRecord
from .validation import ZERO, make_item_key


@dataclass(frozen=True)
class HolidayInfo:
    date: str
    name: str


@dataclass(frozen=True)
class Advisory:
    """Holiday and weather notes for the delivery day, stored verbatim."""

    holidays: Tuple[HolidayInfo, ...] = ()
    weather: Optional[Dict[str, Any]] = field(default=None)

    def to_document(self) -> Dict[str, Any]:
        return {
            "holidays": [{"date": holiday.date, "name": holiday.name} for holiday in self.holidays],
            "weather": dict(self.weather) if self.weather is not None else None,
        }

    @classmethod
    def from_document(cls, document: Optional[Mapping[str, Any]]) -> "Advisory":
        if not document:
            return cls()
        holidays = tuple(
            HolidayInfo(date=str(entry.get("date", "")), name=str(entry.get("name", "")))
            for entry in document.get("holidays") or []
            if isinstance(entry, Mapping)
        )
        weather = document.get("weather")
        return cls(holidays=holidays, weather=dict(weather) if isinstance(weather, Mapping) else None)


class AdvisoryProvider(Protocol):
    def advisory_for(self, delivery_date: date) -> Advisory:
        ...


def format_quantity(value: Decimal) -> str:
    """Plain decimal text without trailing zeros: ``5``, ``2.5``."""

    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def render_order(
    store_name: str,
    catalog: MasterCatalog,
    quantities: Mapping[str, Decimal],
    related_store_name: Optional[str] = None,
) -> str:
    """Render the order as the plain text that is sent to the supplier.

    Categories and items follow catalog order. Every catalog item gets a
    ``"<item> - <quantity>"`` line, including zeros, so the supplier sees the
    full list. ``related_store_name`` is appended as the last section.
    """

    lines = [store_name]
    for category in catalog.categories():
        items = catalog.items(category)
        if not items:
            continue
        lines.append("")
        lines.append(f"*{category}*")
        for item in items:
            quantity = quantities.get(make_item_key(category, item), ZERO)
            lines.append(f"{item} - {format_quantity(quantity)}")
    if related_store_name:
        lines.append("")
        lines.append(related_store_name)
    return "\n".join(lines)


def generate_order_id(store_id: str, created_at: datetime) -> str:
    return f"{store_id}-{int(created_at.timestamp() * 1000)}"


def build_order_record(
    *,
    store_id: str,
    store_name: str,
    catalog: MasterCatalog,
    quantities: Mapping[str, Decimal],
    snapshot: Mapping[str, Decimal],
    advisory: Advisory,
    created_at: datetime,
    recorded_by: Optional[str] = None,
    related_store_name: Optional[str] = None,
) -> OrderRecord:
    """Assemble an :class:`OrderRecord` with its id, dates and rendered text.

    The id is fixed here, before any write attempt, so a retried write lands
    on the same document.
    """

    return OrderRecord(
        order_id=generate_order_id(store_id, created_at),
        store_id=store_id,
        store_name=store_name,
        order_date=created_at,
        delivery_date=created_at + timedelta(days=1),
        quantities=dict(quantities),
        rendered_text=render_order(store_name, catalog, quantities, related_store_name),
        snapshot_at_order_time=dict(snapshot),
        advisory=advisory.to_document(),
        recorded_by=recorded_by,
    )
