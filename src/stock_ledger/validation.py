"""Pure validation and sanitization helpers.

Nothing in this module touches storage. Out-of-range quantities are clamped
rather than rejected so a counter clerk never loses a whole entry to a typo;
only structurally invalid input raises :class:`ValidationError`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .constants import DEFAULT_MAX_QUANTITY, ITEM_KEY_SEPARATOR, QUANTITY_STEP
from .errors import ValidationError


USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
STORE_NAME_MAX_LENGTH = 100
MAX_ENTRY_AGE_DAYS = 365

ZERO = Decimal("0")


@dataclass(frozen=True)
class SanitizedSnapshot:
    """Result of :func:`sanitize_snapshot`: the clean map plus any warnings."""

    sanitized: Dict[str, Decimal]
    warnings: List[str] = field(default_factory=list)

    def __iter__(self):
        # Allows ``sanitized, warnings = sanitize_snapshot(raw)``.
        return iter((self.sanitized, self.warnings))


def make_item_key(category: str, item: str) -> str:
    """Join a category and item name into an ``ItemKey``."""

    return f"{category}{ITEM_KEY_SEPARATOR}{item}"


def split_item_key(key: str) -> Tuple[str, str]:
    """Split an ``ItemKey`` on its first separator.

    Item names may themselves contain ``-``; category names may not.

    Raises:
        ValidationError: If ``key`` has no separator or an empty side.
    """

    category, separator, item = key.partition(ITEM_KEY_SEPARATOR)
    if not separator or not category or not item:
        raise ValidationError(f"Invalid key format: {key}")
    return category, item


def coerce_quantity(value: Any) -> Optional[Decimal]:
    """Parse a raw user-entered value into a finite ``Decimal``.

    Returns ``None`` for anything that is not a number: ``None``, booleans,
    unparsable strings and NaN. Infinities are returned so the caller can
    clamp them like any other oversized value.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    if number.is_nan():
        return None
    return number


def round_quantity(value: Decimal) -> Decimal:
    """Round to two decimal places, halves away from zero."""

    return value.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def sanitize_snapshot(raw: Mapping[str, Any], *, max_quantity: Decimal = DEFAULT_MAX_QUANTITY) -> SanitizedSnapshot:
    """Coerce and bound a raw quantity map before it enters the ledger.

    Non-numeric values become ``0`` silently. Negative values become ``0``
    and oversized values are clamped to ``max_quantity``; both emit a
    warning. Keys without a category separator are reported and dropped.
    Applying the function to its own output returns the same map.

    Args:
        raw (Mapping[str, Any]): Quantities keyed by ``"<Category>-<Item>"``.
        max_quantity (Decimal): Inclusive upper bound for any single item.

    Returns:
        SanitizedSnapshot: Clean quantities rounded to two decimals and the
            list of warnings collected along the way.

    Raises:
        ValidationError: If ``raw`` is not a mapping or contains non-string
            keys.
    """

    if not isinstance(raw, Mapping):
        raise ValidationError("Invalid stock data format", context="Stock Validation")

    bound = round_quantity(Decimal(max_quantity))
    sanitized: Dict[str, Decimal] = {}
    warnings: List[str] = []

    for key, value in raw.items():
        if not isinstance(key, str):
            raise ValidationError(f"Invalid key type: {key!r}", context="Stock Validation")
        if ITEM_KEY_SEPARATOR not in key:
            warnings.append(f"Invalid key format: {key}")
            continue

        number = coerce_quantity(value)
        if number is None:
            sanitized[key] = round_quantity(ZERO)
        elif number < ZERO:
            warnings.append(f"Negative value for {key}: {value}")
            sanitized[key] = round_quantity(ZERO)
        elif number > bound:
            warnings.append(f"Unrealistic value for {key}: {value}")
            sanitized[key] = bound
        else:
            sanitized[key] = round_quantity(number)

    return SanitizedSnapshot(sanitized=sanitized, warnings=warnings)


def count_stocked_items(quantities: Mapping[str, Decimal]) -> int:
    """Number of items with a strictly positive quantity."""

    return sum(1 for value in quantities.values() if value > ZERO)


def total_quantity(quantities: Mapping[str, Decimal]) -> Decimal:
    return sum(quantities.values(), ZERO)


def validate_identifier(username: Optional[str], password: Optional[str]) -> List[str]:
    """Return every violated credential rule; an empty list means valid.

    Username and password are checked independently so a caller can show
    all problems at once.
    """

    errors: List[str] = []

    if not username or not username.strip():
        errors.append("Username is required")
    elif len(username) < USERNAME_MIN_LENGTH:
        errors.append(f"Username must be at least {USERNAME_MIN_LENGTH} characters")
    elif len(username) > USERNAME_MAX_LENGTH:
        errors.append(f"Username too long (max {USERNAME_MAX_LENGTH} characters)")
    elif not USERNAME_PATTERN.match(username):
        errors.append("Username can only contain letters, numbers, dots, hyphens, and underscores")

    if not password:
        errors.append("Password is required")
    elif len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    elif len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password too long (max {PASSWORD_MAX_LENGTH} characters)")

    return errors


def validate_store_name(name: Any) -> str:
    """Return the store name with surrounding and repeated whitespace removed."""

    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Store name is required", context="Store Management")
    cleaned = " ".join(name.split())
    if len(cleaned) > STORE_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Store name too long (max {STORE_NAME_MAX_LENGTH} characters)",
            context="Store Management",
        )
    return cleaned


def validate_entry_date(day: Union[date, str], *, today: date) -> date:
    """Check that a stock entry date is neither in the future nor stale.

    Args:
        day (date | str): Calendar day or ISO ``YYYY-MM-DD`` string.
        today (date): The caller's notion of today, injected for testing.

    Returns:
        date: The parsed calendar day.

    Raises:
        ValidationError: For unparsable, future, or older-than-a-year dates.
    """

    if isinstance(day, str):
        try:
            parsed = date.fromisoformat(day)
        except ValueError as exc:
            raise ValidationError("Invalid date format", context="Stock Entry") from exc
    elif isinstance(day, datetime):
        parsed = day.date()
    elif isinstance(day, date):
        parsed = day
    else:
        raise ValidationError("Invalid date format", context="Stock Entry")

    if parsed > today:
        raise ValidationError("Cannot select future dates", context="Stock Entry")
    if parsed < today - timedelta(days=MAX_ENTRY_AGE_DAYS):
        raise ValidationError("Date too far in the past (max 1 year)", context="Stock Entry")
    return parsed
