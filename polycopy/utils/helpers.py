"""General utility functions."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional


def to_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Convert API values (str, float, int, None) to Decimal."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        return default


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO8601 timestamp, assuming UTC when no offset is given."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def short_label(label: str, width: int = 25) -> str:
    """Truncate a market slug for log lines."""
    return label[:width] if label else ""
