"""Master item catalog: ordered categories mapped to ordered item names.

The catalog is a value object. Mutators return a new :class:`MasterCatalog`
so a caller can keep the previous version around until the replacement has
been persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import DEFAULT_CATALOG, ITEM_KEY_SEPARATOR
from .errors import BusinessRuleViolation, MissingReferenceError, ValidationError
from .validation import make_item_key, split_item_key


@dataclass(frozen=True)
class MasterCatalog:
    """Ordered ``category -> items`` mapping consumed by every ledger component."""

    entries: Tuple[Tuple[str, Tuple[str, ...]], ...]

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Sequence[str]]) -> "MasterCatalog":
        """Build a catalog preserving the mapping's iteration order.

        Raises:
            ValidationError: If a category name is blank or contains the key
                separator, or an item name is blank.
            BusinessRuleViolation: If an item repeats within its category.
        """

        entries: List[Tuple[str, Tuple[str, ...]]] = []
        for category, items in mapping.items():
            category_name = _clean_category(category)
            seen: List[str] = []
            for item in items:
                item_name = _clean_item(item)
                if item_name in seen:
                    raise BusinessRuleViolation(
                        f"Item '{item_name}' already exists in {category_name}",
                        context="Item Manager",
                    )
                seen.append(item_name)
            entries.append((category_name, tuple(seen)))
        return cls(entries=tuple(entries))

    @classmethod
    def default(cls) -> "MasterCatalog":
        return cls.from_mapping(DEFAULT_CATALOG)

    def to_mapping(self) -> Dict[str, List[str]]:
        return {category: list(items) for category, items in self.entries}

    def categories(self) -> List[str]:
        return [category for category, _ in self.entries]

    def items(self, category: str) -> List[str]:
        for name, items in self.entries:
            if name == category:
                return list(items)
        return []

    def item_keys(self) -> List[str]:
        """All ``ItemKey`` values in rendering order."""

        return [make_item_key(category, item) for category, items in self.entries for item in items]

    def iter_items(self) -> Iterator[Tuple[str, str]]:
        for category, items in self.entries:
            for item in items:
                yield category, item

    def contains(self, key: str) -> bool:
        try:
            category, item = split_item_key(key)
        except ValidationError:
            return False
        return item in self.items(category)

    def add_item(self, category: str, item: str) -> "MasterCatalog":
        """Return a catalog with ``item`` appended to ``category``.

        Unknown categories are created at the end of the ordering.
        """

        category_name = _clean_category(category)
        item_name = _clean_item(item)
        mapping = self.to_mapping()
        current = mapping.setdefault(category_name, [])
        if item_name in current:
            raise BusinessRuleViolation("Item already exists in this category", context="Item Manager")
        current.append(item_name)
        log.info("Catalog item '%s' added to %s", item_name, category_name)
        return MasterCatalog.from_mapping(mapping)

    def remove_item(self, category: str, item: str) -> "MasterCatalog":
        """Return a catalog without ``item``; the category itself is kept."""

        mapping = self.to_mapping()
        current = mapping.get(category)
        if current is None or item not in current:
            raise MissingReferenceError(f"Item '{item}' not found in {category}", context="Item Manager")
        current.remove(item)
        log.info("Catalog item '%s' removed from %s", item, category)
        return MasterCatalog.from_mapping(mapping)


def catalog_from_document(document: Optional[Mapping[str, Any]]) -> Optional[MasterCatalog]:
    """Read the ``list`` field of a stored catalog document."""

    if not document or not isinstance(document.get("list"), Mapping):
        return None
    return MasterCatalog.from_mapping(document["list"])


def _clean_category(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Please enter a category name", context="Item Manager")
    name = value.strip()
    if ITEM_KEY_SEPARATOR in name:
        raise ValidationError(
            f"Category names cannot contain '{ITEM_KEY_SEPARATOR}': {name}",
            context="Item Manager",
        )
    return name


def _clean_item(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Please enter an item name", context="Item Manager")
    return value.strip()
