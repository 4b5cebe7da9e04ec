"""Configuration module."""

from .settings import Settings, get_settings
from .markets import MarketClassifier, DEFAULT_SPORTS_PATTERNS

__all__ = ["Settings", "get_settings", "MarketClassifier", "DEFAULT_SPORTS_PATTERNS"]
