"""Polymarket data clients."""

from .data_api import (
    DataAPIError,
    PolymarketDataAPI,
    PositionSource,
    UserPosition,
    UserTrade,
)

__all__ = [
    "DataAPIError",
    "PolymarketDataAPI",
    "PositionSource",
    "UserPosition",
    "UserTrade",
]
