"""
Shared test fixtures for polycopy tests.

Provides reusable fixtures for:
- A controllable clock
- An in-memory trading client that records orders
- An in-memory position feed
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from polycopy.execution.clob_client import OrderSide, OrderType, TradeResult
from polycopy.scrapers.data_api import UserPosition


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Trading client
# ---------------------------------------------------------------------------


@dataclass
class PlacedOrder:
    token_id: str
    side: OrderSide
    usd_amount: Decimal
    price: Optional[Decimal]
    order_type: OrderType


class FakeTradingClient:
    """
    Records every order. Orders succeed unless a result was queued with
    queue_failure()/queue_result().
    """

    def __init__(self):
        self.orders: list[PlacedOrder] = []
        self.cancelled: list[str] = []
        self.cancel_result = True
        self.best_bid: Optional[Decimal] = None
        self.raise_for: set[str] = set()
        self.delay = 0.0  # seconds each execute_trade takes
        self._results: deque = deque()
        self._counter = 0

    def queue_result(self, result: TradeResult) -> None:
        self._results.append(result)

    def queue_failure(self, *errors: str) -> None:
        for error in errors:
            self._results.append(TradeResult(success=False, error=error))

    async def execute_trade(
        self,
        token_id,
        side,
        usd_amount,
        price=None,
        order_type=OrderType.GTC,
    ) -> TradeResult:
        if token_id in self.raise_for:
            raise RuntimeError("boom")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.orders.append(PlacedOrder(token_id, OrderSide(side), usd_amount, price, OrderType(order_type)))
        if self._results:
            return self._results.popleft()
        self._counter += 1
        return TradeResult(success=True, order_id=f"order-{self._counter}", price=price)

    async def cancel_order(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return self.cancel_result

    async def get_best_bid(self, token_id: str) -> Optional[Decimal]:
        return self.best_bid

    async def get_orderbook(self, token_id: str) -> dict:
        bids = [{"price": self.best_bid, "size": Decimal("100")}] if self.best_bid else []
        return {"bids": bids, "asks": []}

    @property
    def last_order(self) -> PlacedOrder:
        return self.orders[-1]


@pytest.fixture
def trading_client():
    return FakeTradingClient()


# ---------------------------------------------------------------------------
# Position feed
# ---------------------------------------------------------------------------


class FakePositionSource:
    """In-memory get_positions() keyed by token id."""

    def __init__(self):
        self.positions: dict[str, UserPosition] = {}
        self.fail = False
        self.calls = 0

    def set(
        self,
        token_id: str,
        current_price: str,
        avg_price: str = "0.50",
        size: str = "100",
        market_slug: str = "will-it-rain-tomorrow",
    ) -> None:
        self.positions[token_id] = UserPosition(
            token_id=token_id,
            size=Decimal(size),
            avg_price=Decimal(avg_price),
            current_price=Decimal(current_price),
            market_slug=market_slug,
        )

    def remove(self, token_id: str) -> None:
        self.positions.pop(token_id, None)

    async def get_positions(self, address: str) -> list[UserPosition]:
        self.calls += 1
        if self.fail:
            raise ConnectionError("data api unavailable")
        return list(self.positions.values())


@pytest.fixture
def position_source():
    return FakePositionSource()
