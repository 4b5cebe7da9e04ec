"""Utility modules."""

from .logging import setup_logging
from .helpers import (
    parse_datetime,
    short_label,
    to_decimal,
    utcnow,
)

__all__ = [
    "setup_logging",
    "parse_datetime",
    "short_label",
    "to_decimal",
    "utcnow",
]
