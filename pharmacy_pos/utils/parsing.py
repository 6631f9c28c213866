"""Parsing helpers for values coming from the inventory API and persisted carts."""
import math
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

CENTS = Decimal('0.01')


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """
    Convert a JSON value (number or numeric string) to Decimal.

    Floats go through str() so 0.1 stays 0.1. Booleans, NaN and infinities
    are rejected.

    Returns:
        The Decimal, or `default` if the value is missing or not numeric.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not result.is_finite():
        return default
    return result


def to_quantity(value: Any) -> Optional[int]:
    """
    Convert a quantity to an int >= 1 (floored, clamped).

    Returns None if the value is not numeric at all.
    """
    number = to_decimal(value)
    if number is None:
        return None
    return max(1, int(math.floor(number)))


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware datetime (UTC if naive).

    Accepts a trailing 'Z'. Returns None for missing or malformed values.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    """Parse a batch expiry ('2030-01-01' or a full timestamp) into a date."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format an aware datetime as ISO-8601, or None."""
    if value is None:
        return None
    return value.isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
